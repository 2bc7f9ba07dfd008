import pytest
from fastapi.testclient import TestClient

from sessionscribe.api import Services, create_app
from sessionscribe.errors import TranscriptionError
from sessionscribe.pipeline import PipelineOrchestrator

from test_pipeline import FakeGenerator, FakeTranscriber

UPLOAD_URL = "/api/session-notes/upload-audio"


def _client(settings, store, storage, transcriber=None, generator=None):
    pipeline = PipelineOrchestrator(store, transcriber or FakeTranscriber(), generator or FakeGenerator())
    services = Services(settings=settings, store=store, storage=storage, pipeline=pipeline)
    return TestClient(create_app(services))


def _upload(client, recording_ref="rec-1", auto=None, content_type="audio/flac", data=b"flac-bytes", **fields):
    form = {"recordingRef": recording_ref, **fields} if recording_ref else dict(fields)
    url = UPLOAD_URL if auto is None else f"{UPLOAD_URL}?autoProcess={'true' if auto else 'false'}"
    return client.post(url, files={"audio": ("session.flac", data, content_type)}, data=form)


def test_upload_creates_pending_note(settings, store, storage):
    client = _client(settings, store, storage)
    resp = _upload(client, durationSeconds="120", bookingId="booking-1")
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["recordingRef"] == "rec-1"
    note_id = body["sessionNoteId"]

    recording = store.get_recording("rec-1")
    assert recording.duration_seconds == 120
    assert recording.booking_id == "booking-1"
    assert storage.get(recording.storage_ref) == b"flac-bytes"

    status = client.get(f"/api/session-notes/{note_id}/processing").json()
    assert status["run"] is None
    assert status["isAiGenerated"] is False


def test_upload_with_auto_process_runs_pipeline(settings, store, storage):
    client = _client(settings, store, storage)
    note_id = _upload(client, auto=True).json()["sessionNoteId"]
    status = client.get(f"/api/session-notes/{note_id}/processing").json()
    assert status["run"]["status"] == "COMPLETED"
    assert status["isAiGenerated"] is True
    assert status["reviewStatus"] == "PENDING"


def test_upload_auto_process_header(settings, store, storage):
    client = _client(settings, store, storage)
    resp = client.post(
        UPLOAD_URL,
        files={"audio": ("session.flac", b"abc", "audio/flac")},
        data={"bookingId": "booking-2"},
        headers={"x-auto-process": "true"},
    )
    assert resp.status_code == 200
    assert resp.json()["recordingRef"]
    note_id = resp.json()["sessionNoteId"]
    assert client.get(f"/api/session-notes/{note_id}/processing").json()["run"]["status"] == "COMPLETED"


@pytest.mark.parametrize(
    "kwargs,status",
    [
        ({"recording_ref": None}, 400),
        ({"content_type": "text/plain"}, 400),
        ({"data": b""}, 400),
    ],
)
def test_upload_validation_errors(settings, store, storage, kwargs, status):
    client = _client(settings, store, storage)
    resp = _upload(client, **kwargs)
    assert resp.status_code == status
    assert "error" in resp.json()


def test_duplicate_recording_rejected(settings, store, storage):
    client = _client(settings, store, storage)
    assert _upload(client).status_code == 200
    resp = _upload(client)
    assert resp.status_code == 409
    assert resp.json() == {"error": "Recording already uploaded"}


def test_process_audio_returns_deidentified_note(settings, store, storage):
    client = _client(settings, store, storage)
    note_id = _upload(client).json()["sessionNoteId"]
    resp = client.post(f"/api/session-notes/{note_id}/process-audio")
    assert resp.status_code == 200
    body = resp.json()
    assert body["run"]["status"] == "COMPLETED"
    assert body["note"]["subjective"] == "[PATIENT_NAME] reports insomnia."
    assert {"PHONE", "LOCATION", "PATIENT_NAME"} <= set(body["redactedCategories"])
    assert "Okafor" not in resp.text


def test_process_audio_failure_body(settings, store, storage):
    client = _client(settings, store, storage, transcriber=FakeTranscriber(error=TranscriptionError("No transcription text received")))
    note_id = _upload(client).json()["sessionNoteId"]
    resp = client.post(f"/api/session-notes/{note_id}/process-audio")
    assert resp.status_code == 500
    assert resp.json() == {"error": "Failed to process audio", "details": "No transcription text received"}
    status = client.get(f"/api/session-notes/{note_id}/processing").json()
    assert status["run"]["status"] == "FAILED"
    assert status["run"]["error"] == "No transcription text received"


def test_process_audio_conflict_when_run_in_flight(settings, store, storage):
    client = _client(settings, store, storage)
    note_id = _upload(client).json()["sessionNoteId"]
    store.create_run("rec-1")
    resp = client.post(f"/api/session-notes/{note_id}/process-audio")
    assert resp.status_code == 409
    assert "in progress" in resp.json()["error"]


def test_unknown_note_returns_404(settings, store, storage):
    client = _client(settings, store, storage)
    assert client.post("/api/session-notes/nope/process-audio").status_code == 404
    assert client.get("/api/session-notes/nope/processing").json() == {"error": "Session note not found"}


def test_reidentify_restores_values(settings, store, storage):
    client = _client(settings, store, storage)
    note_id = _upload(client).json()["sessionNoteId"]
    pending = client.post(f"/api/session-notes/{note_id}/reidentify", json={"patientName": "Ada"})
    assert pending.status_code == 409

    client.post(f"/api/session-notes/{note_id}/process-audio")
    resp = client.post(f"/api/session-notes/{note_id}/reidentify", json={"patientName": "Ada"})
    assert resp.status_code == 200
    assert resp.json()["note"]["subjective"] == "Ada reports insomnia."

    stored = client.post(f"/api/session-notes/{note_id}/reidentify", json={})
    assert stored.json()["note"]["subjective"] == "[PATIENT_NAME] reports insomnia."


def test_reidentify_rejects_unknown_fields(settings, store, storage):
    client = _client(settings, store, storage)
    note_id = _upload(client).json()["sessionNoteId"]
    resp = client.post(f"/api/session-notes/{note_id}/reidentify", json={"ssn": "123"})
    assert resp.status_code == 422


def test_metrics_endpoint(settings, store, storage):
    client = _client(settings, store, storage)
    note_id = _upload(client).json()["sessionNoteId"]
    client.post(f"/api/session-notes/{note_id}/process-audio")
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "sessionscribe_pipeline_runs_total" in resp.text
    assert "sessionscribe_phi_substitutions_total" in resp.text


def test_racing_duplicate_upload_keeps_first_blob(monkeypatch, settings, store, storage):
    client = _client(settings, store, storage)
    assert _upload(client, data=b"first-take").status_code == 200

    # Both requests pass the existence check before either registers.
    monkeypatch.setattr(store, "get_recording", lambda recording_id: None)
    resp = _upload(client, data=b"second-take")

    assert resp.status_code == 409
    assert resp.json() == {"error": "Recording already uploaded"}
    assert storage.get(storage.ref_for("rec-1", "audio/flac")) == b"first-take"
    assert not list(storage.root.glob("*.part"))


def test_recording_ref_must_be_a_plain_name(settings, store, storage):
    client = _client(settings, store, storage)
    resp = _upload(client, recording_ref="../escape")
    assert resp.status_code == 400
    assert not list(storage.root.glob("*"))
