from ..models import ParsedProfile, SlicerType
from .base import ZipContents, decode
from .bbl import MODEL_SETTINGS, BambuFamilyParser, config_value


class OrcaParser(BambuFamilyParser):
    """OrcaSlicer projects. Checked after Bambu, whose markers are more specific."""

    slicer_type = SlicerType.ORCA

    def can_parse(self, contents: ZipContents) -> bool:
        model_settings = decode(contents, MODEL_SETTINGS)
        if not model_settings:
            return False
        return "OrcaSlicer" in model_settings or "orca_slicer" in model_settings

    def parse(self, contents: ZipContents) -> ParsedProfile:
        model_settings = decode(contents, MODEL_SETTINGS)
        if model_settings is None:
            raise ValueError(f"Missing {MODEL_SETTINGS}")

        printer_name = config_value(model_settings, "printer_preset_name") or config_value(
            model_settings, "printer_model"
        )
        metadata = self.plate_metadata(
            self.load_plate(contents), self.regex_settings(model_settings)
        )
        return self.build_profile(printer_name, metadata, contents)
