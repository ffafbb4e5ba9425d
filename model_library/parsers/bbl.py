import json
import logging
import re
from typing import Any

from ..models import PlateInfo, PrintProfileMetadata, PrintSettings
from .base import BaseParser, ZipContents, decode, parse_int, parse_number, summarize_filaments

logger = logging.getLogger(__name__)

MODEL_SETTINGS = "Metadata/model_settings.config"
PROJECT_SETTINGS = "Metadata/project_settings.config"
PLATE_JSON = "Metadata/plate_1.json"
SLICE_INFO = "Metadata/slice_info.config"


def _setting_re(keys: str) -> re.Pattern:
    return re.compile(rf'(?:{keys})\s*=\s*"?([0-9.]+)"?')


_LAYER_HEIGHT_RE = _setting_re("layer_height")
_INFILL_RE = _setting_re("sparse_infill_density|infill_density")
_NOZZLE_TEMP_RE = _setting_re("nozzle_temperature|temperature")
_BED_TEMP_RE = _setting_re("bed_temperature|hot_plate_temp")


def config_value(content: str, key: str) -> str | None:
    """Value of ``key = "value"`` in a Bambu-family config text."""
    match = re.search(rf'{key}\s*=\s*"?([^"\n]+)"?', content)
    if match:
        return match.group(1).strip() or None
    return None


def _search(pattern: re.Pattern, content: str) -> str | None:
    match = pattern.search(content)
    return match.group(1) if match else None


class BambuFamilyParser(BaseParser):
    """Shared parsing for Bambu Studio and its OrcaSlicer fork.

    Both write ``Metadata/plate_1.json`` (print time, filaments, weight) and a
    ``key = value`` settings text in ``Metadata/model_settings.config``.
    """

    thumbnail_paths = ("Metadata/plate_1.png", "Metadata/thumbnail.png")

    def load_plate(self, contents: ZipContents) -> dict[str, Any] | None:
        text = decode(contents, PLATE_JSON)
        if text is None:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            logger.debug("Ignoring malformed %s", PLATE_JSON)
            return None
        return data if isinstance(data, dict) else None

    def regex_settings(self, content: str) -> PrintSettings:
        return PrintSettings(
            layer_height_mm=parse_number(_search(_LAYER_HEIGHT_RE, content)),
            infill_percent=parse_int(_search(_INFILL_RE, content)),
            nozzle_temp_c=parse_int(_search(_NOZZLE_TEMP_RE, content)),
            bed_temp_c=parse_int(_search(_BED_TEMP_RE, content)),
        )

    def plate_metadata(self, plate: dict[str, Any] | None, settings: PrintSettings) -> PrintProfileMetadata:
        plate = plate or {}
        filaments = [
            (f.get("type"), f.get("color"))
            for f in plate.get("filaments") or []
            if isinstance(f, dict)
        ]
        copies = plate.get("objects_cnt")
        return PrintProfileMetadata(
            print_time_seconds=parse_int(plate.get("prediction")),
            filament_summary=summarize_filaments(filaments),
            filament_weight_grams=parse_number(plate.get("weight")),
            settings=settings,
            plates_info=PlateInfo(count=1, copies_per_plate=copies) if copies else None,
        )
