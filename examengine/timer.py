"""Per-section countdown clock with a one-shot low-time warning and auto-stop on expiry."""
import logging
import threading
from typing import Callable, Optional

from engine import TIME_WARNING_SECONDS

logger = logging.getLogger(__name__)


def format_time(seconds: Optional[int]) -> str:
    """Seconds -> H:MM:SS."""
    if seconds is None:
        return "--:--"
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    minutes, secs = divmod(rest, 60)
    return f"{hours}:{minutes:02d}:{secs:02d}"


class SectionTimer:
    """
    Whole-second countdown for the active section.

    A daemon thread calls tick() once per ``interval`` seconds. With
    ``threaded=False`` nothing ticks on its own and the owner drives tick()
    (tests, or a UI loop). Callbacks run outside the timer lock so they may
    call stop() or start() again.
    """

    def __init__(
        self,
        on_expire: Callable[[str], None],
        on_warning: Optional[Callable[[str, int], None]] = None,
        warning_seconds: int = TIME_WARNING_SECONDS,
        interval: float = 1.0,
        threaded: bool = True,
    ) -> None:
        self.on_expire = on_expire
        self.on_warning = on_warning
        self.warning_seconds = warning_seconds
        self.interval = interval
        self.threaded = threaded

        self._lock = threading.Lock()
        self._run_id = 0
        self._stop_event: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None
        self._section_id: Optional[str] = None
        self._remaining: Optional[int] = None
        self._warned = False

    @property
    def remaining_seconds(self) -> Optional[int]:
        return self._remaining

    @property
    def section_id(self) -> Optional[str]:
        return self._section_id

    @property
    def running(self) -> bool:
        return self._remaining is not None

    @property
    def warning_shown(self) -> bool:
        return self._warned

    def start(self, section_id: str, duration_minutes: int) -> None:
        """Start a countdown, replacing any run in progress."""
        with self._lock:
            self._halt_locked()
            self._run_id += 1
            self._section_id = section_id
            self._remaining = max(0, int(duration_minutes * 60))
            self._warned = False
            run_id = self._run_id
            if self.threaded:
                self._stop_event = threading.Event()
                self._thread = threading.Thread(
                    target=self._run,
                    args=(run_id, self._stop_event),
                    name=f"section-timer-{section_id}",
                    daemon=True,
                )
                self._thread.start()
        logger.info(f"Timer started for section {section_id}: {duration_minutes} min")

    def stop(self) -> None:
        """Idempotent; safe with no active run."""
        with self._lock:
            if self._remaining is None:
                return
            logger.debug(f"Timer stopped for section {self._section_id} at {self._remaining}s")
            self._halt_locked()

    def _halt_locked(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        self._stop_event = None
        self._thread = None
        self._section_id = None
        self._remaining = None

    def _run(self, run_id: int, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.interval):
            if not self.tick(run_id=run_id):
                return

    def tick(self, run_id: Optional[int] = None) -> Optional[int]:
        """
        Advance the clock one second.

        Returns the remaining seconds, or None when there is no run (or the
        tick belongs to a run that has since been replaced).
        """
        warn = expired = None
        with self._lock:
            if self._remaining is None or (run_id is not None and run_id != self._run_id):
                return None
            self._remaining = max(0, self._remaining - 1)
            remaining = self._remaining
            section_id = self._section_id
            if remaining <= self.warning_seconds and not self._warned:
                self._warned = True
                warn = section_id
            if remaining == 0:
                expired = section_id
                self._halt_locked()

        if warn is not None and self.on_warning is not None:
            logger.info(f"Low time warning for section {warn}: {remaining}s left")
            self.on_warning(warn, remaining)
        if expired is not None:
            logger.info(f"Time expired for section {expired}")
            self.on_expire(expired)
        return remaining
