"""
OCR service: picks the remote recognition service or the local Tesseract
engine for a receipt image, falls back from remote to local when allowed,
and reports progress.

Engine selection is a small state machine driven by a RecognitionPolicy:

    NOT_STARTED --start_remote--> TRYING_REMOTE --succeeded--> DONE
    NOT_STARTED --start_local---> TRYING_LOCAL  --succeeded--> DONE
    TRYING_REMOTE --fallback----> TRYING_LOCAL
    TRYING_REMOTE --failed------> FAILED
    TRYING_LOCAL  --failed------> FAILED

Remote and local are never run in parallel.
"""

import io
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple

import pytesseract
import requests
from PIL import Image, ImageEnhance, UnidentifiedImageError

from expense_scan.config import settings
from expense_scan.models.receipt import OcrMode, RasterImage, RecognitionEngine, RecognitionOutcome
from expense_scan.utils.errors import ExtractionError, LocalRecognitionError, RemoteRecognitionError
from expense_scan.utils.network import has_network_connectivity

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float, str], None]


# ----------------------------------------------------------------------
# Progress
# ----------------------------------------------------------------------

class ProgressRelay:
    """
    Forwards progress to the caller until it is detached.

    A caller that no longer cares about a scan (e.g. its request went away)
    detaches the relay; later progress updates are then dropped. The
    recognition itself is not interrupted.
    """

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self.active = True

    def __call__(self, progress: float, status: str) -> None:
        if not self.active or self._callback is None:
            return
        self._callback(max(0.0, min(1.0, float(progress))), status)

    def detach(self) -> None:
        self.active = False


# ----------------------------------------------------------------------
# Policy and state machine
# ----------------------------------------------------------------------

class DispatchState(str, Enum):
    NOT_STARTED = "not_started"
    TRYING_REMOTE = "trying_remote"
    TRYING_LOCAL = "trying_local"
    DONE = "done"
    FAILED = "failed"


class DispatchEvent(str, Enum):
    START_REMOTE = "start_remote"
    START_LOCAL = "start_local"
    SUCCEEDED = "succeeded"
    FALLBACK = "fallback"
    FAILED = "failed"


TRANSITIONS: Dict[Tuple[DispatchState, DispatchEvent], DispatchState] = {
    (DispatchState.NOT_STARTED, DispatchEvent.START_REMOTE): DispatchState.TRYING_REMOTE,
    (DispatchState.NOT_STARTED, DispatchEvent.START_LOCAL): DispatchState.TRYING_LOCAL,
    (DispatchState.TRYING_REMOTE, DispatchEvent.SUCCEEDED): DispatchState.DONE,
    (DispatchState.TRYING_REMOTE, DispatchEvent.FALLBACK): DispatchState.TRYING_LOCAL,
    (DispatchState.TRYING_REMOTE, DispatchEvent.FAILED): DispatchState.FAILED,
    (DispatchState.TRYING_LOCAL, DispatchEvent.SUCCEEDED): DispatchState.DONE,
    (DispatchState.TRYING_LOCAL, DispatchEvent.FAILED): DispatchState.FAILED,
}


class DispatchStateMachine:
    """Tracks engine selection for one recognition call."""

    def __init__(self):
        self.state = DispatchState.NOT_STARTED
        self.history: List[DispatchState] = [self.state]

    def fire(self, event: DispatchEvent) -> DispatchState:
        try:
            next_state = TRANSITIONS[(self.state, event)]
        except KeyError:
            raise RuntimeError(f"Invalid OCR dispatch transition: {self.state.value} --{event.value}-->")
        logger.debug("OCR dispatch transition", extra={
            "from_state": self.state.value,
            "event": event.value,
            "to_state": next_state.value,
        })
        self.state = next_state
        self.history.append(next_state)
        return next_state


@dataclass(frozen=True)
class RecognitionPolicy:
    """
    Declares how a recognition call picks and falls back between engines.

    try_remote: start with the remote service
    fallback_to_local: a remote failure moves on to the local engine
        instead of failing the call
    """
    mode: OcrMode
    try_remote: bool
    fallback_to_local: bool

    @classmethod
    def for_mode(
        cls,
        mode: OcrMode,
        credential: Optional[str] = None,
        is_online: Callable[[], bool] = has_network_connectivity
    ) -> "RecognitionPolicy":
        mode = OcrMode(mode)
        if mode == OcrMode.ONLINE:
            return cls(mode=mode, try_remote=True, fallback_to_local=False)
        if mode == OcrMode.OFFLINE:
            return cls(mode=mode, try_remote=False, fallback_to_local=False)
        # auto: only go remote when a key is configured and the host is online
        has_credential = bool(credential and credential.strip())
        return cls(
            mode=mode,
            try_remote=has_credential and is_online(),
            fallback_to_local=True,
        )


def remote_language_code(ui_language: Optional[str]) -> str:
    """Remote recognition language for the UI language (German unless Italian)."""
    return "ita" if ui_language == "it" else "ger"


# ----------------------------------------------------------------------
# Engines
# ----------------------------------------------------------------------

class TesseractEngine:
    """
    Local Tesseract engine configured for the German/Italian/English bundle.

    Use as a context manager, or call close() after use to release the
    decoded images.
    """

    def __init__(
        self,
        lang: str = None,
        tessdata_dir: Optional[str] = None,
        tesseract_cmd: str = None
    ):
        """Initialize engine with Tesseract configuration."""
        self.lang = lang or settings.OCR_LANG
        self.tessdata_dir = tessdata_dir if tessdata_dir is not None else settings.OCR_TESSDATA_DIR
        pytesseract.pytesseract.tesseract_cmd = tesseract_cmd or settings.TESSERACT_CMD
        self._images: List[Image.Image] = []

    def __enter__(self) -> "TesseractEngine":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _config(self) -> str:
        # --psm 6: a single uniform block of text, which suits receipts
        config = r'--oem 3 --psm 6'
        if self.tessdata_dir:
            config += f' --tessdata-dir "{self.tessdata_dir}"'
        return config

    def recognize(
        self,
        image: RasterImage,
        progress_logger: Optional[Callable[[dict], None]] = None
    ) -> str:
        """
        Recognize text in an image.

        Args:
            image: Raster image to read
            progress_logger: Receives {"progress": float, "status": str} events

        Returns:
            Recognized text

        Raises:
            LocalRecognitionError: Image cannot be decoded or Tesseract failed
        """
        def emit(progress: float, status: str) -> None:
            if progress_logger:
                progress_logger({"progress": progress, "status": status})

        try:
            emit(0.0, "loading image")
            decoded = Image.open(io.BytesIO(image.data))
            self._images.append(decoded)

            emit(0.2, "preprocessing image")
            prepared = self._preprocess_image(decoded)
            self._images.append(prepared)

            emit(0.4, "recognizing text")
            text = pytesseract.image_to_string(prepared, lang=self.lang, config=self._config())
            emit(1.0, "recognizing text")
            return text or ""

        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            raise LocalRecognitionError(f"Tesseract failed: {e}") from e
        except (UnidentifiedImageError, OSError) as e:
            raise LocalRecognitionError(f"Image could not be read: {e}", code="IMAGE_UNREADABLE") from e

    def _preprocess_image(self, image: Image.Image) -> Image.Image:
        """
        Preprocess image to improve OCR accuracy.

        Args:
            image: PIL Image object

        Returns:
            Preprocessed image
        """
        # Convert to RGB if needed
        if image.mode != 'RGB':
            image = image.convert('RGB')

        # Convert to grayscale
        image = image.convert('L')

        # Increase contrast, this helps with faded thermal paper
        enhancer = ImageEnhance.Contrast(image)
        return enhancer.enhance(2.0)

    def close(self) -> None:
        for image in self._images:
            image.close()
        self._images = []


class RemoteOcrClient:
    """Client for an ocr.space compatible recognition service."""

    def __init__(
        self,
        api_url: str = None,
        engine_version: str = None,
        timeout: float = None,
        session: Optional[requests.Session] = None
    ):
        self.api_url = api_url or settings.OCR_API_URL
        self.engine_version = engine_version or settings.OCR_ENGINE_VERSION
        self.timeout = timeout if timeout is not None else settings.OCR_REMOTE_TIMEOUT
        self.session = session or requests.Session()

    def recognize(self, image: RasterImage, credential: Optional[str], language: str) -> str:
        """
        Submit an image and return the first parsed text.

        Raises:
            RemoteRecognitionError: No credential, transport error, non-2xx
                status, unreadable body, or a processing error reported
        """
        api_key = (credential or "").strip()
        if not api_key:
            raise RemoteRecognitionError("No API key configured for online OCR", code="REMOTE_NO_KEY")

        payload = {
            "apikey": api_key,
            "language": language,
            "isOverlayRequired": "false",
            "OCREngine": self.engine_version,
            "base64Image": image.to_data_uri(),
        }

        try:
            response = self.session.post(self.api_url, data=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise RemoteRecognitionError(f"Online OCR request failed: {e}", code="REMOTE_UNREACHABLE") from e

        if not response.ok:
            raise RemoteRecognitionError(
                f"Online OCR failed with HTTP {response.status_code}",
                code="REMOTE_HTTP",
            )

        try:
            data = response.json()
        except ValueError as e:
            raise RemoteRecognitionError("Online OCR returned an unreadable response", code="REMOTE_BODY") from e

        if not isinstance(data, dict):
            raise RemoteRecognitionError("Online OCR returned an unexpected response", code="REMOTE_BODY")

        if data.get("IsErroredOnProcessing"):
            error = data.get("ErrorMessage")
            message = ", ".join(error) if isinstance(error, list) else error
            raise RemoteRecognitionError(message or "Online OCR error", code="REMOTE_PROCESSING")

        results = data.get("ParsedResults") or []
        if not results:
            return ""
        if not isinstance(results[0], dict):
            raise RemoteRecognitionError("Online OCR returned an unexpected result", code="REMOTE_BODY")
        return results[0].get("ParsedText") or ""


# ----------------------------------------------------------------------
# Dispatcher
# ----------------------------------------------------------------------

class OCRService:
    """Service for recognizing receipt text with remote/local engine selection."""

    def __init__(
        self,
        remote_client: Optional[RemoteOcrClient] = None,
        local_engine_factory: Callable[[], TesseractEngine] = TesseractEngine,
        is_online: Callable[[], bool] = has_network_connectivity
    ):
        self.remote_client = remote_client or RemoteOcrClient()
        self.local_engine_factory = local_engine_factory
        self.is_online = is_online

    def recognize(
        self,
        image: RasterImage,
        mode: OcrMode = OcrMode.AUTO,
        credential: Optional[str] = None,
        ui_language: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None
    ) -> RecognitionOutcome:
        """
        Recognize text, choosing the engine according to the mode.

        Args:
            image: Rasterized receipt
            mode: auto, offline or online
            credential: Remote API key (auto mode only goes remote with one)
            ui_language: "de" or "it", selects the remote language
            on_progress: Receives (fraction, status) from the local engine

        Returns:
            RecognitionOutcome with the text and the engine that produced it

        Raises:
            RemoteRecognitionError: Remote failed in online mode
            LocalRecognitionError: Local engine failed
        """
        policy = RecognitionPolicy.for_mode(mode, credential, self.is_online)
        machine = DispatchStateMachine()
        progress = on_progress if isinstance(on_progress, ProgressRelay) else ProgressRelay(on_progress)

        if policy.try_remote:
            machine.fire(DispatchEvent.START_REMOTE)
            try:
                text = self._recognize_remote(image, credential, ui_language)
                machine.fire(DispatchEvent.SUCCEEDED)
                return self._outcome(text, RecognitionEngine.REMOTE)
            except RemoteRecognitionError as e:
                if not policy.fallback_to_local:
                    machine.fire(DispatchEvent.FAILED)
                    logger.error("Online OCR failed", extra={"code": e.code, "error": e.message})
                    raise
                machine.fire(DispatchEvent.FALLBACK)
                logger.warning("Online OCR failed, falling back to local engine", extra={
                    "code": e.code,
                    "error": e.message,
                })
        else:
            machine.fire(DispatchEvent.START_LOCAL)

        try:
            text = self._recognize_local(image, progress)
        except ExtractionError as e:
            machine.fire(DispatchEvent.FAILED)
            logger.error("Local OCR failed", extra={"code": e.code, "error": e.message})
            raise
        machine.fire(DispatchEvent.SUCCEEDED)
        return self._outcome(text, RecognitionEngine.LOCAL)

    def _recognize_remote(self, image: RasterImage, credential: Optional[str], ui_language: Optional[str]) -> str:
        return self.remote_client.recognize(image, credential, remote_language_code(ui_language))

    def _recognize_local(self, image: RasterImage, progress: ProgressRelay) -> str:
        def forward(message: dict) -> None:
            progress(message.get("progress") or 0.0, message.get("status") or "OCR")

        with self.local_engine_factory() as engine:
            return engine.recognize(image, forward)

    @staticmethod
    def _outcome(text: str, engine: RecognitionEngine) -> RecognitionOutcome:
        logger.info("Recognized receipt text", extra={
            "engine": engine.value,
            "text_length": len(text),
        })
        return RecognitionOutcome(text=text, engine=engine)
