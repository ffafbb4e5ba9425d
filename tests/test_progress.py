from model_library.models import AddVersionInput, UploadFile
from model_library.pipeline import IngestionPipeline
from model_library.progress import NullProgressReporter, track_chunks


class RecordingReporter(NullProgressReporter):
    def __init__(self):
        self.events = []

    def update_status(self, message):
        self.events.append(("status", message))

    def step(self, step_name, current, total):
        self.events.append(("step", step_name, current, total))

    def warn(self, message):
        self.events.append(("warn", message))


class RecordingTransfer:
    def __init__(self):
        self.advanced = []

    def advance(self, byte_count):
        self.advanced.append(byte_count)


def test_track_chunks_counts_bytes():
    bar = RecordingTransfer()
    assert list(track_chunks([b"abc", b"", b"de"], bar)) == [b"abc", b"", b"de"]
    assert bar.advanced == [3, 0, 2]


def test_null_transfer_is_a_context_manager():
    with NullProgressReporter().transfer(10, "x") as bar:
        bar.advance(10)


def test_pipeline_reports_steps_and_profile_warnings(db, store, org_id, model_v3):
    reporter = RecordingReporter()
    pipeline = IngestionPipeline(db, store, reporter=reporter)
    pipeline.add_version(
        AddVersionInput(
            model_id=model_v3,
            organization_id=org_id,
            actor_id="alice",
            files=[
                UploadFile(filename="a.stl", data=b"a"),
                UploadFile(filename="bad.3mf", data=b"not a zip"),
            ],
        )
    )

    assert reporter.events[0] == ("status", "Creating v4 with 2 file(s)")
    assert ("step", "Uploading a.stl", 1, 2) in reporter.events
    assert ("step", "Uploading bad.3mf", 2, 2) in reporter.events
    warnings = [e[1] for e in reporter.events if e[0] == "warn"]
    assert len(warnings) == 1
    assert "bad.3mf" in warnings[0]
