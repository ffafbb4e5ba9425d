import logging

from iniconfig import IniConfig, ParseError

from ..models import ParsedProfile, PrintProfileMetadata, PrintSettings, SlicerType
from .base import (
    BaseParser,
    ZipContents,
    decode,
    parse_duration,
    parse_int,
    parse_number,
    summarize_filaments,
)

logger = logging.getLogger(__name__)

CONFIG_PATHS = ("slic3r_pe.config", "Metadata/Slic3r_PE.config")

# Synthetic section so the flat config loads as INI.
_SECTION = "slic3r"


def load_config(text: str, source: str = "slic3r_pe.config") -> dict[str, str]:
    """Parse PrusaSlicer's flat ``key = value`` config.

    3MF exports write every line as ``; key = value``; the prefix is dropped.
    Lines are stripped (no value continuations) and later keys win.
    """
    entries: dict[str, str] = {}
    for raw in text.splitlines():
        line = raw.strip()
        if line.startswith(";"):
            line = line[1:].strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or ":" in key or key.startswith("["):
            continue
        entries[key] = value.strip()

    data = "\n".join([f"[{_SECTION}]"] + [f"{k} = {v}" for k, v in entries.items()])
    try:
        ini = IniConfig(source, data=data)
    except ParseError as e:
        raise ValueError(f"Malformed PrusaSlicer config: {e}") from e
    return dict(ini[_SECTION].items())


def _split(value: str | None, sep: str) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(sep) if part.strip()]


class PrusaParser(BaseParser):
    """
    PrusaSlicer projects.

    Settings live in an INI-style ``slic3r_pe.config`` at the archive root, or
    in ``Metadata/Slic3r_PE.config`` for newer exports. Multi-value settings
    (temperatures per extruder, filaments) are ``,`` or ``;`` separated.
    """

    slicer_type = SlicerType.PRUSA
    thumbnail_paths = ("Thumbnails/thumbnail.png", "Metadata/thumbnail.png")

    def _config_text(self, contents: ZipContents) -> tuple[str, str] | None:
        for path in CONFIG_PATHS:
            text = decode(contents, path)
            if text is not None:
                return path, text
        return None

    def can_parse(self, contents: ZipContents) -> bool:
        found = self._config_text(contents)
        if found is None:
            return False
        _, text = found
        return any(marker in text for marker in ("PrusaSlicer", "slic3r_pe", "printer_model"))

    def parse(self, contents: ZipContents) -> ParsedProfile:
        found = self._config_text(contents)
        if found is None:
            raise ValueError("Missing slic3r_pe.config")
        path, text = found
        config = load_config(text, path)

        settings = PrintSettings(
            layer_height_mm=parse_number(config.get("layer_height")),
            infill_percent=parse_int((config.get("fill_density") or "").replace("%", "") or None),
            nozzle_temp_c=parse_int(next(iter(_split(config.get("temperature"), ",")), None)),
            bed_temp_c=parse_int(next(iter(_split(config.get("bed_temperature"), ",")), None)),
        )

        types = _split(config.get("filament_type"), ";")
        colors = _split(config.get("filament_colour"), ";")
        filaments = [(t, colors[i] if i < len(colors) else None) for i, t in enumerate(types)]

        print_time = config.get("estimated_print_time") or config.get("print_time")
        metadata = PrintProfileMetadata(
            print_time_seconds=parse_duration(print_time),
            filament_summary=summarize_filaments(filaments),
            filament_weight_grams=parse_number(config.get("filament_used_g")),
            settings=settings,
            plates_info=None,
        )
        return self.build_profile(self._printer_name(config), metadata, contents)

    def _printer_name(self, config: dict[str, str]) -> str | None:
        for key in ("printer_settings_id", "printer_model"):
            if config.get(key):
                return config[key]
        notes = config.get("printer_notes")
        if notes:
            return notes.split(";", 1)[0].strip() or None
        return None
