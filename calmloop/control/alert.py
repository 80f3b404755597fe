from __future__ import annotations
import enum
import logging
from typing import Callable, List

log = logging.getLogger(__name__)


class NotificationState(str, enum.Enum):
    HIDDEN = "hidden"
    SHOWN = "shown"


ACKNOWLEDGE_CONTROL = "acknowledge"


class AlertPresenter:
    """
    Stress alert with a per-episode latch.

    `show()` raises the alert at most once per stress episode;
    `reset_episode()` (called when the subject is calm again) re-arms it.
    Only `acknowledge()` hides a shown alert. How the alert blocks the rest of
    the interface is up to the presentation layer, which reads `inert` and
    `focus_target`.
    """

    def __init__(self, subject: str = "The user") -> None:
        self.subject = subject
        self.state = NotificationState.HIDDEN
        self.shown_this_episode = False
        self._listeners: List[Callable[[str], None]] = []

    @property
    def message(self) -> str:
        return (f"{self.subject} is currently experiencing sensory overload. "
                "Please assist them as soon as possible.")

    @property
    def inert(self) -> bool:
        return self.state is NotificationState.SHOWN

    @property
    def focus_target(self) -> str | None:
        return ACKNOWLEDGE_CONTROL if self.inert else None

    def on_show(self, listener: Callable[[str], None]) -> None:
        self._listeners.append(listener)

    def show(self) -> bool:
        if self.state is NotificationState.SHOWN or self.shown_this_episode:
            return False
        self.state = NotificationState.SHOWN
        self.shown_this_episode = True
        log.info("alert shown: %s", self.message)
        for listener in list(self._listeners):
            try:
                listener(self.message)
            except Exception:
                log.exception("alert listener failed")
        return True

    def acknowledge(self) -> bool:
        if self.state is not NotificationState.SHOWN:
            return False
        self.state = NotificationState.HIDDEN
        log.info("alert acknowledged")
        return True

    def reset_episode(self) -> None:
        self.shown_this_episode = False
