"""
Tests for OCR engine selection, remote/local fallback and progress reporting.
"""

import io

import pytest
import pytesseract
import requests
from PIL import Image

from expense_scan.models.receipt import OcrMode, RasterImage, RecognitionEngine
from expense_scan.services import ocr as ocr_module
from expense_scan.services.ocr import (
    DispatchEvent,
    DispatchState,
    DispatchStateMachine,
    OCRService,
    ProgressRelay,
    RecognitionPolicy,
    RemoteOcrClient,
    TesseractEngine,
    remote_language_code,
)
from expense_scan.utils.errors import LocalRecognitionError, RemoteRecognitionError


def png_image() -> RasterImage:
    buffer = io.BytesIO()
    Image.new("RGB", (40, 20), "white").save(buffer, format="PNG")
    return RasterImage(data=buffer.getvalue(), content_type="image/png")


class FakeRemote:
    def __init__(self, text="remote text", error=None):
        self.text = text
        self.error = error
        self.calls = []

    def recognize(self, image, credential, language):
        self.calls.append((credential, language))
        if self.error:
            raise self.error
        return self.text


class FakeEngine:
    instances = []

    def __init__(self, text="local text", error=None):
        self.text = text
        self.error = error
        self.closed = False
        self.calls = 0
        FakeEngine.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True

    def recognize(self, image, progress_logger=None):
        self.calls += 1
        if progress_logger:
            progress_logger({"progress": 0.0, "status": "loading image"})
            progress_logger({"progress": 0.5, "status": "recognizing text"})
        if self.error:
            raise self.error
        if progress_logger:
            progress_logger({"progress": 1.0, "status": "recognizing text"})
        return self.text


@pytest.fixture(autouse=True)
def _reset_engines():
    FakeEngine.instances = []
    yield


def make_service(remote=None, engine_kwargs=None, online=True):
    engine_kwargs = engine_kwargs or {}
    return OCRService(
        remote_client=remote or FakeRemote(),
        local_engine_factory=lambda: FakeEngine(**engine_kwargs),
        is_online=lambda: online,
    )


class TestRecognitionPolicy:

    def test_online_forces_remote_without_fallback(self):
        policy = RecognitionPolicy.for_mode(OcrMode.ONLINE, credential=None, is_online=lambda: False)
        assert policy.try_remote is True
        assert policy.fallback_to_local is False

    def test_offline_never_goes_remote(self):
        policy = RecognitionPolicy.for_mode(OcrMode.OFFLINE, credential="key", is_online=lambda: True)
        assert policy.try_remote is False

    def test_auto_needs_key_and_connectivity(self):
        assert RecognitionPolicy.for_mode("auto", "key", lambda: True).try_remote is True
        assert RecognitionPolicy.for_mode("auto", "key", lambda: False).try_remote is False
        assert RecognitionPolicy.for_mode("auto", "  ", lambda: True).try_remote is False
        assert RecognitionPolicy.for_mode("auto", "key", lambda: True).fallback_to_local is True

    def test_auto_without_key_skips_connectivity_probe(self):
        def probe():
            raise AssertionError("probe must not run without a key")

        assert RecognitionPolicy.for_mode(OcrMode.AUTO, None, probe).try_remote is False


class TestDispatchStateMachine:

    def test_remote_then_fallback_path(self):
        machine = DispatchStateMachine()
        machine.fire(DispatchEvent.START_REMOTE)
        machine.fire(DispatchEvent.FALLBACK)
        machine.fire(DispatchEvent.SUCCEEDED)
        assert machine.history == [
            DispatchState.NOT_STARTED,
            DispatchState.TRYING_REMOTE,
            DispatchState.TRYING_LOCAL,
            DispatchState.DONE,
        ]

    def test_invalid_transition(self):
        machine = DispatchStateMachine()
        machine.fire(DispatchEvent.START_LOCAL)
        with pytest.raises(RuntimeError):
            machine.fire(DispatchEvent.FALLBACK)


class TestOCRServiceDispatch:

    def test_auto_uses_remote_when_available(self):
        remote = FakeRemote(text="MIGROS")
        service = make_service(remote=remote)

        outcome = service.recognize(png_image(), mode=OcrMode.AUTO, credential="key", ui_language="de")

        assert outcome.text == "MIGROS"
        assert outcome.engine == RecognitionEngine.REMOTE
        assert remote.calls == [("key", "ger")]
        assert FakeEngine.instances == []

    def test_auto_falls_back_to_local_on_remote_failure(self):
        remote = FakeRemote(error=RemoteRecognitionError("HTTP 500", code="REMOTE_HTTP"))
        service = make_service(remote=remote)

        outcome = service.recognize(png_image(), mode=OcrMode.AUTO, credential="key")

        assert outcome.engine == RecognitionEngine.LOCAL
        assert outcome.text == "local text"
        assert len(remote.calls) == 1
        assert FakeEngine.instances[0].closed is True

    def test_online_mode_propagates_remote_failure(self):
        remote = FakeRemote(error=RemoteRecognitionError("quota exceeded"))
        service = make_service(remote=remote)

        with pytest.raises(RemoteRecognitionError, match="quota exceeded"):
            service.recognize(png_image(), mode=OcrMode.ONLINE, credential="key")

        assert FakeEngine.instances == []

    def test_offline_mode_never_calls_remote(self):
        remote = FakeRemote()
        service = make_service(remote=remote)

        outcome = service.recognize(png_image(), mode=OcrMode.OFFLINE, credential="key")

        assert outcome.engine == RecognitionEngine.LOCAL
        assert remote.calls == []

    def test_auto_offline_host_goes_local(self):
        remote = FakeRemote()
        service = make_service(remote=remote, online=False)

        outcome = service.recognize(png_image(), mode=OcrMode.AUTO, credential="key")

        assert outcome.engine == RecognitionEngine.LOCAL
        assert remote.calls == []

    def test_local_failure_is_fatal(self):
        service = make_service(engine_kwargs={"error": LocalRecognitionError("tesseract crashed")})

        with pytest.raises(LocalRecognitionError):
            service.recognize(png_image(), mode=OcrMode.OFFLINE)

        assert FakeEngine.instances[0].closed is True

    def test_progress_is_forwarded(self):
        events = []
        service = make_service()

        service.recognize(png_image(), mode=OcrMode.OFFLINE, on_progress=lambda p, s: events.append((p, s)))

        assert events[0] == (0.0, "loading image")
        assert events[-1] == (1.0, "recognizing text")
        assert all(0.0 <= progress <= 1.0 for progress, _ in events)

    def test_italian_ui_selects_italian_remote_language(self):
        remote = FakeRemote()
        make_service(remote=remote).recognize(png_image(), mode=OcrMode.ONLINE, credential="k", ui_language="it")
        assert remote.calls == [("k", "ita")]

    @pytest.mark.parametrize("payload", [[], {"ParsedResults": [None]}])
    def test_auto_falls_back_on_malformed_remote_body(self, payload):
        session = FakeSession(FakeResponse(payload=payload))
        remote = RemoteOcrClient(api_url="https://ocr.example/parse", engine_version="2", timeout=5, session=session)
        service = make_service(remote=remote)

        outcome = service.recognize(png_image(), mode=OcrMode.AUTO, credential="k")

        assert outcome.engine == RecognitionEngine.LOCAL
        assert len(session.requests) == 1

    def test_online_mode_reports_malformed_remote_body(self):
        session = FakeSession(FakeResponse(payload=[]))
        remote = RemoteOcrClient(api_url="https://ocr.example/parse", engine_version="2", timeout=5, session=session)

        with pytest.raises(RemoteRecognitionError):
            make_service(remote=remote).recognize(png_image(), mode=OcrMode.ONLINE, credential="k")

        assert FakeEngine.instances == []


class TestProgressRelay:

    def test_detached_relay_drops_late_updates(self):
        events = []
        relay = ProgressRelay(lambda p, s: events.append((p, s)))

        relay(0.3, "recognizing text")
        relay.detach()
        relay(1.0, "recognizing text")

        assert events == [(0.3, "recognizing text")]

    def test_progress_is_clamped(self):
        events = []
        relay = ProgressRelay(lambda p, s: events.append(p))
        relay(1.7, "done")
        relay(-1, "start")
        assert events == [1.0, 0.0]

    def test_without_callback(self):
        ProgressRelay()(0.5, "ignored")

    def test_detached_relay_passed_to_service(self):
        events = []
        relay = ProgressRelay(lambda p, s: events.append(p))
        relay.detach()

        outcome = make_service().recognize(png_image(), mode=OcrMode.OFFLINE, on_progress=relay)

        assert outcome.text == "local text"
        assert events == []


class TestRemoteLanguage:

    def test_language_codes(self):
        assert remote_language_code("it") == "ita"
        assert remote_language_code("de") == "ger"
        assert remote_language_code(None) == "ger"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, body_error=False):
        self.status_code = status_code
        self.ok = 200 <= status_code < 300
        self._payload = payload
        self._body_error = body_error

    def json(self):
        if self._body_error:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []

    def post(self, url, data=None, timeout=None):
        self.requests.append({"url": url, "data": data, "timeout": timeout})
        if self.error:
            raise self.error
        return self.response


class TestRemoteOcrClient:

    def make_client(self, session):
        return RemoteOcrClient(api_url="https://ocr.example/parse", engine_version="2", timeout=5, session=session)

    def test_request_contract_and_parsed_text(self):
        session = FakeSession(FakeResponse(payload={
            "ParsedResults": [{"ParsedText": "MIGROS\nTOTAL CHF 5.00"}],
            "IsErroredOnProcessing": False,
        }))
        image = png_image()

        text = self.make_client(session).recognize(image, " key ", "ger")

        assert text == "MIGROS\nTOTAL CHF 5.00"
        sent = session.requests[0]
        assert sent["url"] == "https://ocr.example/parse"
        assert sent["timeout"] == 5
        assert sent["data"]["apikey"] == "key"
        assert sent["data"]["language"] == "ger"
        assert sent["data"]["isOverlayRequired"] == "false"
        assert sent["data"]["OCREngine"] == "2"
        assert sent["data"]["base64Image"] == image.to_data_uri()
        assert sent["data"]["base64Image"].startswith("data:image/png;base64,")

    def test_missing_parsed_results_is_empty_text(self):
        session = FakeSession(FakeResponse(payload={"IsErroredOnProcessing": False}))
        assert self.make_client(session).recognize(png_image(), "key", "ger") == ""

    def test_processing_error_joins_messages(self):
        session = FakeSession(FakeResponse(payload={
            "IsErroredOnProcessing": True,
            "ErrorMessage": ["File failed validation", "Unable to recognize"],
        }))
        with pytest.raises(RemoteRecognitionError, match="File failed validation, Unable to recognize"):
            self.make_client(session).recognize(png_image(), "key", "ger")

    def test_non_success_status(self):
        session = FakeSession(FakeResponse(status_code=403, payload={}))
        with pytest.raises(RemoteRecognitionError) as exc_info:
            self.make_client(session).recognize(png_image(), "key", "ger")
        assert exc_info.value.code == "REMOTE_HTTP"
        assert exc_info.value.stage == "remote"

    def test_unreadable_body(self):
        session = FakeSession(FakeResponse(body_error=True))
        with pytest.raises(RemoteRecognitionError):
            self.make_client(session).recognize(png_image(), "key", "ger")

    @pytest.mark.parametrize("payload", [[], None, "ok", {"ParsedResults": [None]}, {"ParsedResults": ["text"]}])
    def test_unexpected_body_shape(self, payload):
        session = FakeSession(FakeResponse(payload=payload))
        with pytest.raises(RemoteRecognitionError) as exc_info:
            self.make_client(session).recognize(png_image(), "key", "ger")
        assert exc_info.value.code == "REMOTE_BODY"

    def test_transport_error(self):
        session = FakeSession(error=requests.ConnectionError("offline"))
        with pytest.raises(RemoteRecognitionError) as exc_info:
            self.make_client(session).recognize(png_image(), "key", "ger")
        assert exc_info.value.code == "REMOTE_UNREACHABLE"

    def test_missing_credential(self):
        session = FakeSession()
        with pytest.raises(RemoteRecognitionError):
            self.make_client(session).recognize(png_image(), None, "ger")
        assert session.requests == []


class TestTesseractEngine:

    def test_recognizes_with_trilingual_bundle(self, monkeypatch):
        calls = []

        def fake_image_to_string(image, lang=None, config=None):
            calls.append({"mode": image.mode, "lang": lang, "config": config})
            return "Brot 3.20\n"

        monkeypatch.setattr(ocr_module.pytesseract, "image_to_string", fake_image_to_string)
        events = []

        with TesseractEngine(lang="deu+ita+eng", tessdata_dir="/opt/tessdata", tesseract_cmd="tesseract") as engine:
            text = engine.recognize(png_image(), events.append)

        assert text == "Brot 3.20\n"
        assert calls[0]["lang"] == "deu+ita+eng"
        assert calls[0]["mode"] == "L"
        assert '--tessdata-dir "/opt/tessdata"' in calls[0]["config"]
        assert events[0] == {"progress": 0.0, "status": "loading image"}
        assert events[-1]["progress"] == 1.0

    def test_tesseract_error_becomes_local_error(self, monkeypatch):
        def broken(image, lang=None, config=None):
            raise pytesseract.TesseractError(1, "Failed loading language 'ita'")

        monkeypatch.setattr(ocr_module.pytesseract, "image_to_string", broken)

        with TesseractEngine(tesseract_cmd="tesseract") as engine:
            with pytest.raises(LocalRecognitionError):
                engine.recognize(png_image())

    def test_unreadable_image(self):
        with TesseractEngine(tesseract_cmd="tesseract") as engine:
            with pytest.raises(LocalRecognitionError) as exc_info:
                engine.recognize(RasterImage(data=b"not an image", content_type="image/jpeg"))
        assert exc_info.value.code == "IMAGE_UNREADABLE"
