"""Per-client classification sessions.

All mutable state lives here and changes only through a few operations:

- ``ModelSlot``: ``loading`` -> ``load_model_done`` / ``load_model_failed``
  (one-way; a failed load is never retried).
- ``ClassifierSession``: ``begin_image_selection`` / ``image_selected`` and
  ``prediction_completed``.

Blocking work (decode, preprocess, inference) runs in the InferencePool and
its result is applied back on the event loop. Image selections carry a
generation number so a slow decode never overwrites a newer selection.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from classifyx.ml.inference import predict
from classifyx.ml.preprocessing import decode_image, preprocess, to_data_url

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator

    from PIL import Image

    from classifyx.ml.inference import InferencePool
    from classifyx.ml.model_manager import LoadedModel, ModelProvider
    from classifyx.ml.variants import ClassifierVariant

logger = logging.getLogger(__name__)

NOT_READY_NOTICE = "Please upload an image and wait for the model to load."


class PredictionUnavailableError(RuntimeError):
    """Raised when a prediction is requested before model and image are ready."""


class SessionNotFoundError(KeyError):
    """Raised for an unknown or ended session id."""


# ---------------------------------------------------------------------------
# Model slot
# ---------------------------------------------------------------------------


class ModelStatus(StrEnum):
    NO_MODEL = "no_model"
    LOADING = "loading"
    READY = "ready"
    FAILED = "failed"


class ModelSlot:
    """Holds the process-wide model handle once it has loaded."""

    def __init__(self) -> None:
        self._status = ModelStatus.NO_MODEL
        self._model: LoadedModel | None = None
        self._error: BaseException | None = None

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def model(self) -> LoadedModel | None:
        return self._model

    @property
    def error(self) -> BaseException | None:
        """The exception that made the load fail, if it did."""
        return self._error

    def loading(self) -> None:
        if self._status is not ModelStatus.NO_MODEL:
            raise RuntimeError(f"Model load already started (status={self._status})")
        self._status = ModelStatus.LOADING

    def load_model_done(self, model: LoadedModel) -> None:
        if self._status is not ModelStatus.LOADING:
            raise RuntimeError(f"No model load in progress (status={self._status})")
        self._model = model
        self._status = ModelStatus.READY

    def load_model_failed(self, exc: BaseException) -> None:
        if self._status is not ModelStatus.LOADING:
            raise RuntimeError(f"No model load in progress (status={self._status})")
        self._error = exc
        self._status = ModelStatus.FAILED


async def load_model(
    slot: ModelSlot,
    make_provider: Callable[[], ModelProvider],
    model_filename: str,
    pool: InferencePool,
) -> None:
    """Load the model in the background and install it into ``slot``.

    The provider is built inside the task: setup errors such as an
    unwritable models directory fail the load like download errors do.

    Failures are logged and leave the slot in ``failed`` for the lifetime of
    the process.
    """
    slot.loading()
    logger.info("Loading model %s", model_filename)
    try:
        model = await pool.run(_build_and_load, make_provider, model_filename)
    except Exception as exc:
        logger.exception("Error loading model %s", model_filename)
        slot.load_model_failed(exc)
        return
    slot.load_model_done(model)
    logger.info("Model %s ready", model_filename)


def _build_and_load(make_provider: Callable[[], ModelProvider], model_filename: str) -> LoadedModel:
    return make_provider().load(model_filename)


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class HistoryEntry:
    """One completed prediction: the displayable image and its label."""

    image_url: str
    predicted_label: str


class PredictionHistory:
    """Append-only, insertion-ordered list of predictions."""

    def __init__(self) -> None:
        self._entries: list[HistoryEntry] = []

    def append(self, entry: HistoryEntry) -> None:
        self._entries.append(entry)

    def entries(self) -> list[HistoryEntry]:
        """Snapshot of all entries, oldest first."""
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[HistoryEntry]:
        return iter(self.entries())


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ImageSelection:
    """The currently selected image: its data URL and decoded pixels."""

    image_url: str
    image: Image.Image


@dataclass
class SessionState:
    image: ImageSelection | None = None
    prediction: str | None = None
    image_generation: int = 0
    history: PredictionHistory = field(default_factory=PredictionHistory)


class ClassifierSession:
    """Controller owning one client's SessionState."""

    def __init__(
        self,
        session_id: str,
        variant: ClassifierVariant,
        model_slot: ModelSlot,
        pool: InferencePool,
    ) -> None:
        self.session_id = session_id
        self._variant = variant
        self._model_slot = model_slot
        self._pool = pool
        self._state = SessionState()

    # -- Read-only projection -------------------------------------------------

    @property
    def model_status(self) -> ModelStatus:
        return self._model_slot.status

    @property
    def image_url(self) -> str | None:
        return self._state.image.image_url if self._state.image else None

    @property
    def prediction(self) -> str | None:
        return self._state.prediction

    @property
    def history(self) -> PredictionHistory:
        return self._state.history

    # -- State transitions ----------------------------------------------------

    def begin_image_selection(self) -> int:
        """Start a new selection; any in-flight older selection becomes stale."""
        self._state.image_generation += 1
        return self._state.image_generation

    def image_selected(self, generation: int, selection: ImageSelection) -> bool:
        """Install a decoded image unless a newer selection has started."""
        if generation != self._state.image_generation:
            logger.debug(
                "Session %s: dropping stale image (generation %d, current %d)",
                self.session_id,
                generation,
                self._state.image_generation,
            )
            return False
        self._state.image = selection
        return True

    def prediction_completed(self, entry: HistoryEntry) -> None:
        if entry.predicted_label not in self._variant.labels:
            raise ValueError(f"Label {entry.predicted_label!r} is not a {self._variant.name} label")
        self._state.prediction = entry.predicted_label
        self._state.history.append(entry)

    # -- Operations -------------------------------------------------------------

    async def select_image(self, image_bytes: bytes, content_type: str) -> bool:
        """Decode an upload and make it the current image.

        Returns False if a newer selection superseded this one while decoding.

        Raises:
            ImageDecodeError: If the bytes are not a decodable image.
        """
        generation = self.begin_image_selection()
        image = await self._pool.run(decode_image, image_bytes)
        selection = ImageSelection(image_url=to_data_url(image_bytes, content_type), image=image)
        return self.image_selected(generation, selection)

    async def predict(self) -> str:
        """Classify the current image and record the result in history.

        Raises:
            PredictionUnavailableError: If the model is not ready or no image is selected.
            ModelContractError: If the model rejects the tensor or returns the wrong number of scores.
        """
        model = self._model_slot.model
        selection = self._state.image
        if self._model_slot.status is not ModelStatus.READY or model is None or selection is None:
            raise PredictionUnavailableError(NOT_READY_NOTICE)

        label = await self._pool.run(self._classify, model, selection.image)
        self.prediction_completed(HistoryEntry(image_url=selection.image_url, predicted_label=label))
        logger.info("Session %s: predicted %s", self.session_id, label)
        return label

    def _classify(self, model: LoadedModel, image: Image.Image) -> str:
        variant = self._variant
        tensor = preprocess(image, variant.width, variant.height, variant.channels)
        return predict(model, tensor, variant.labels)


@dataclass
class _TrackedSession:
    session: ClassifierSession
    last_used: float


class SessionRegistry:
    """Creates, looks up, ends and expires sessions by id.

    With ``session_ttl`` > 0, sessions not accessed for that many seconds are
    dropped by ``evict_idle_sessions``; 0 keeps sessions until they are ended.
    """

    def __init__(
        self,
        variant: ClassifierVariant,
        model_slot: ModelSlot,
        pool: InferencePool,
        session_ttl: int = 0,
    ) -> None:
        self._variant = variant
        self._model_slot = model_slot
        self._pool = pool
        self._session_ttl = session_ttl
        self._sessions: dict[str, _TrackedSession] = {}

    def create(self) -> ClassifierSession:
        self.evict_idle_sessions()
        session_id = uuid.uuid4().hex
        session = ClassifierSession(session_id, self._variant, self._model_slot, self._pool)
        self._sessions[session_id] = _TrackedSession(session=session, last_used=time.monotonic())
        logger.info("Created session %s", session_id)
        return session

    def get(self, session_id: str) -> ClassifierSession:
        try:
            tracked = self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Unknown session: {session_id}") from None
        tracked.last_used = time.monotonic()
        return tracked.session

    def end(self, session_id: str) -> None:
        self.get(session_id)
        del self._sessions[session_id]
        logger.info("Ended session %s", session_id)

    def evict_idle_sessions(self) -> list[str]:
        """Drop sessions idle longer than the TTL and return their ids."""
        if self._session_ttl == 0:
            return []

        now = time.monotonic()
        expired = [sid for sid, tracked in self._sessions.items() if (now - tracked.last_used) > self._session_ttl]
        for session_id in expired:
            del self._sessions[session_id]
            logger.info("Evicted idle session %s", session_id)
        return expired

    def __len__(self) -> int:
        return len(self._sessions)
