import json
from typing import Any

from ..models import ParsedProfile, PrintSettings, SlicerType
from .base import ZipContents, decode, parse_int, parse_number
from .bbl import (
    MODEL_SETTINGS,
    PROJECT_SETTINGS,
    SLICE_INFO,
    BambuFamilyParser,
    config_value,
)


def _first(value: Any) -> Any:
    """Extract the first element if value is a list, otherwise return as-is."""
    if isinstance(value, list):
        return value[0] if value else None
    return value


def _format_nozzle(diameter: float) -> str:
    # 0.4000000059604645 -> "0.4"
    return f"{round(diameter, 2):g}"


class BambuParser(BambuFamilyParser):
    """
    Bambu Studio projects.

    Newer releases write a JSON ``project_settings.config`` with clean preset
    values; older ones only carry the ``model_settings.config`` text.
    """

    slicer_type = SlicerType.BAMBU

    def can_parse(self, contents: ZipContents) -> bool:
        slice_info = decode(contents, SLICE_INFO)
        if slice_info and "X-BBL-Client" in slice_info:
            return True
        model_settings = decode(contents, MODEL_SETTINGS)
        if model_settings:
            return "BambuStudio" in model_settings or "printer_preset_name" in model_settings
        return False

    def parse(self, contents: ZipContents) -> ParsedProfile:
        plate = self.load_plate(contents)
        project = self._load_project(contents)
        model_settings = decode(contents, MODEL_SETTINGS) or ""

        printer_name = self._printer_name(project, model_settings)
        if not printer_name and plate and plate.get("bed_type"):
            printer_name = self._printer_from_plate(plate)

        settings = self._settings(project, model_settings, plate)
        return self.build_profile(printer_name, self.plate_metadata(plate, settings), contents)

    def _load_project(self, contents: ZipContents) -> dict[str, Any] | None:
        text = decode(contents, PROJECT_SETTINGS)
        if not text:
            return None
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            return None
        return data if isinstance(data, dict) else None

    def _printer_name(self, project: dict[str, Any] | None, model_settings: str) -> str | None:
        """Printer model, then preset id, then the legacy config keys."""
        if project:
            for key in ("printer_model", "printer_settings_id"):
                value = _first(project.get(key))
                if value:
                    return str(value)
        return config_value(model_settings, "printer_preset_name") or config_value(
            model_settings, "machine_type"
        )

    def _printer_from_plate(self, plate: dict[str, Any]) -> str:
        nozzle = parse_number(plate.get("nozzle_diameter"))
        if nozzle:
            return f"Bambu Lab Printer ({_format_nozzle(nozzle)}mm)"
        return "Bambu Lab Printer"

    def _settings(
        self,
        project: dict[str, Any] | None,
        model_settings: str,
        plate: dict[str, Any] | None,
    ) -> PrintSettings:
        if project:
            layer_height = parse_number(_first(project.get("layer_height")))
            if layer_height is not None:
                infill = _first(project.get("sparse_infill_density"))
                return PrintSettings(
                    layer_height_mm=layer_height,
                    infill_percent=parse_int(str(infill).replace("%", "") if infill else None),
                    nozzle_temp_c=parse_int(_first(project.get("nozzle_temperature"))),
                    bed_temp_c=parse_int(_first(project.get("hot_plate_temp"))),
                )

        settings = self.regex_settings(model_settings)
        if settings.layer_height_mm is None and plate:
            objects = plate.get("bbox_objects") or []
            if objects and isinstance(objects[0], dict):
                settings.layer_height_mm = parse_number(objects[0].get("layer_height"))
        return settings
