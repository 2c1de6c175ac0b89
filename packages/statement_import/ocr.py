"""Image to text through Tesseract (``pytesseract`` + Pillow).

- :class:`OcrWorker` holds one recognizer configuration and runs a
  recognition call.
- :class:`OcrWorkerPool` keeps a bounded set of pre-warmed workers with
  acquire/release semantics and creates workers on demand when empty.
- :class:`TextExtractor` is the stage entry point: decode, pre-process,
  recognize under a time budget.
"""

from __future__ import annotations

import io
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager

import pytesseract
from PIL import Image, ImageOps, UnidentifiedImageError

from .config import ImportSettings
from .errors import ExtractionError, StageTimeoutError, ValidationError
from .logging_setup import get_logger
from .timeouts import run_with_timeout

# Page segmentation mode 3: fully automatic, no OSD.
PSM_AUTO = 3
CHAR_WHITELIST = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz.,$€£¥-: /"
)

OCR_TIMEOUT_MESSAGE = "Processing timed out. Try a smaller image or paste the text directly."
NO_TEXT_MESSAGE = "No text detected in image"

_logger = get_logger("statement_import.ocr")


class OcrWorker:
    """One Tesseract configuration; each ``recognize`` spawns the engine."""

    def __init__(
        self,
        language: str = "eng",
        *,
        psm: int = PSM_AUTO,
        whitelist: str | None = CHAR_WHITELIST,
    ) -> None:
        self.language = language
        self.psm = psm
        self.whitelist = whitelist
        self.closed = False

    @property
    def config(self) -> str:
        parts = [f"--psm {self.psm}"]
        if self.whitelist:
            parts.append(f'-c "tessedit_char_whitelist={self.whitelist}"')
        return " ".join(parts)

    def warm(self) -> None:
        """Fail fast when the engine is missing, before the first upload."""

        try:
            version = pytesseract.get_tesseract_version()
        except pytesseract.TesseractNotFoundError as e:
            raise ExtractionError(f"Tesseract is not installed: {e}") from e
        _logger.debug("ocr:worker_warm version=%s lang=%s", version, self.language)

    def recognize(self, image: Image.Image, *, timeout: float) -> str:
        if self.closed:
            raise ExtractionError("OCR worker has been closed")
        try:
            return pytesseract.image_to_string(
                image, lang=self.language, config=self.config, timeout=timeout
            )
        except RuntimeError as e:
            # pytesseract reports an expired process timeout as a bare RuntimeError.
            if "timeout" in str(e).lower():
                raise StageTimeoutError("ocr", timeout, OCR_TIMEOUT_MESSAGE) from e
            raise ExtractionError(f"Failed to extract text from image: {e}") from e
        except (pytesseract.TesseractError, pytesseract.TesseractNotFoundError) as e:
            raise ExtractionError(f"Failed to extract text from image: {e}") from e

    def close(self) -> None:
        self.closed = True


class OcrWorkerPool:
    """Bounded pool of OCR workers.

    ``acquire`` pops an idle worker or creates one; ``release`` keeps it only
    while the pool has room. Workers that failed are ``discard``-ed. Safe to
    share between threads.
    """

    def __init__(self, size: int = 2, *, factory: Callable[[], OcrWorker] | None = None) -> None:
        if size < 0:
            raise ValueError("size must be >= 0")
        self.size = size
        self._factory = factory or OcrWorker
        self._idle: list[OcrWorker] = []
        self._lock = threading.Lock()
        self._initialized = False

    @classmethod
    def from_settings(cls, settings: ImportSettings) -> OcrWorkerPool:
        return cls(
            settings.ocr_pool_size,
            factory=lambda: OcrWorker(settings.ocr_language),
        )

    @property
    def idle_count(self) -> int:
        with self._lock:
            return len(self._idle)

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> int:
        """Pre-warm up to ``size`` workers and return how many are idle.

        Warm-up failures are logged; workers are then created on demand.
        """

        if self._initialized:
            return self.idle_count
        t0 = time.perf_counter()
        warmed: list[OcrWorker] = []
        try:
            for _ in range(self.size - self.idle_count):
                worker = self._factory()
                worker.warm()
                warmed.append(worker)
        except ExtractionError as e:
            _logger.error("ocr:pool_warm_failed error=%s", e)
            for worker in warmed:
                worker.close()
            return self.idle_count
        with self._lock:
            self._idle.extend(warmed)
            self._initialized = True
            ready = len(self._idle)
        _logger.info(
            "ocr:pool_ready workers=%d latency_ms=%.2f", ready, (time.perf_counter() - t0) * 1000.0
        )
        return ready

    def acquire(self) -> OcrWorker:
        with self._lock:
            if self._idle:
                return self._idle.pop()
        _logger.debug("ocr:pool_miss creating worker on demand")
        return self._factory()

    def release(self, worker: OcrWorker) -> None:
        with self._lock:
            if not worker.closed and len(self._idle) < self.size:
                self._idle.append(worker)
                return
        worker.close()

    def discard(self, worker: OcrWorker) -> None:
        worker.close()

    @contextmanager
    def worker(self) -> Iterator[OcrWorker]:
        w = self.acquire()
        try:
            yield w
        except BaseException:
            self.discard(w)
            raise
        self.release(w)

    def shutdown(self) -> None:
        with self._lock:
            idle, self._idle = self._idle, []
            self._initialized = False
        for w in idle:
            w.close()


def prepare_image(image: Image.Image, *, max_width: int = 2000) -> Image.Image:
    """Orient, downscale to ``max_width``, grayscale and stretch contrast."""

    img = ImageOps.exif_transpose(image) or image
    if img.width > max_width:
        height = max(1, round(img.height * max_width / img.width))
        img = img.resize((max_width, height), Image.Resampling.LANCZOS)
    return ImageOps.autocontrast(img.convert("L"))


class TextExtractor:
    """Recognize statement text in one uploaded image."""

    def __init__(self, pool: OcrWorkerPool, settings: ImportSettings | None = None) -> None:
        self._pool = pool
        self._settings = settings or ImportSettings()

    def extract(self, image_bytes: bytes, *, timeout: float | None = None) -> str:
        """Return the stripped text of ``image_bytes``.

        Raises ``ValidationError`` for unreadable images, ``StageTimeoutError``
        past the OCR budget and ``ExtractionError`` for engine failures or
        when no text is found.
        """

        if not image_bytes:
            raise ValidationError("No file provided")
        seconds = timeout if timeout is not None else self._settings.ocr_timeout_seconds
        return run_with_timeout(
            lambda: self._extract(image_bytes, seconds),
            seconds=seconds,
            stage="ocr",
            message=OCR_TIMEOUT_MESSAGE,
        )

    def _load(self, image_bytes: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(image_bytes))
            image.load()
        except Image.DecompressionBombError as e:
            raise ValidationError(f"Image dimensions too large: {e}") from e
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise ValidationError(f"Unsupported or corrupt image: {e}") from e
        if not self._settings.ocr_preprocess:
            return image
        try:
            return prepare_image(image, max_width=self._settings.ocr_max_width)
        except (OSError, ValueError) as e:
            _logger.warning("ocr:preprocess_failed error=%s using original image", e)
            return image

    def _extract(self, image_bytes: bytes, seconds: float) -> str:
        t0 = time.perf_counter()
        image = self._load(image_bytes)
        with self._pool.worker() as worker:
            text = worker.recognize(image, timeout=seconds)
        text = (text or "").strip()
        _logger.info(
            "ocr:done bytes=%d chars=%d latency_ms=%.2f",
            len(image_bytes),
            len(text),
            (time.perf_counter() - t0) * 1000.0,
        )
        if not text:
            raise ExtractionError(NO_TEXT_MESSAGE, status_code=400)
        return text


__all__ = [
    "CHAR_WHITELIST",
    "NO_TEXT_MESSAGE",
    "OCR_TIMEOUT_MESSAGE",
    "OcrWorker",
    "OcrWorkerPool",
    "TextExtractor",
    "prepare_image",
]
