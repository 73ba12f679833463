import enum
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class Stage(str, enum.Enum):
    SCANNING = 'scanning'
    PACKAGING = 'packaging'
    TUNNELING = 'tunneling'
    TRANSFERRING = 'transferring'
    VERIFYING = 'verifying'
    COMPLETE = 'complete'
    FAILED = 'failed'


@dataclass(frozen=True)
class SharingProgress:
    """Progress event for a long-running operation."""
    operation_id: str
    stage: Stage
    progress: int
    message: str

    def to_dict(self) -> dict:
        return {
            'operation_id': self.operation_id,
            'stage': self.stage.value,
            'progress': self.progress,
            'message': self.message,
        }


Subscriber = Callable[[SharingProgress], None]


class ProgressChannel:
    """Push channel for progress events, keeping the last event per operation."""

    def __init__(self):
        self._subscribers: List[Subscriber] = []
        self._latest: Dict[str, SharingProgress] = {}

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, operation_id: str, stage: Stage, progress: float, message: str) -> SharingProgress:
        event = SharingProgress(
            operation_id=operation_id,
            stage=Stage(stage),
            progress=int(min(100, max(0, progress))),
            message=message,
        )
        self._latest[operation_id] = event
        logger.debug(f'[{operation_id}] {event.stage.value} {event.progress}%: {message}')

        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception as e:
                logger.error(f'Progress subscriber failed: {e}')
        return event

    def latest(self, operation_id: str) -> Optional[SharingProgress]:
        return self._latest.get(operation_id)

    def forget(self, operation_id: str) -> None:
        self._latest.pop(operation_id, None)
