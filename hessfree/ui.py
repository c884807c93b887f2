"""UI sinks for training sessions."""

from __future__ import annotations

import signal
import threading
from dataclasses import dataclass, field
from typing import Any, Optional

__all__ = ["NullUI", "ConsoleUI"]


class NullUI:
    """Discards every event and never asks to stop."""

    def log_cg_start(self, residual_mag2: float, objective_value: float) -> None:
        pass

    def log_cg_iteration(self, step_size: float, quad_value: float) -> None:
        pass

    def log_new_mini_batch(self, epoch: int, batch: int) -> None:
        pass

    def log_damping(self, trust: float, coeff: float) -> None:
        pass

    def log(self, sender: str, message: str) -> None:
        pass

    def should_stop(self) -> bool:
        return False


@dataclass
class ConsoleUI:
    """Prints events to stdout and stops after the first Ctrl+C.

    The interrupt handler is only installed when the UI is created on the main
    thread. After the first interrupt the default handler is restored, so a
    second Ctrl+C terminates the process.
    """

    install_handler: bool = True
    _kill_flag: threading.Event = field(default_factory=threading.Event, init=False, repr=False)
    _previous_handler: Any = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.install_handler and threading.current_thread() is threading.main_thread():
            self._previous_handler = signal.signal(signal.SIGINT, self.handle_interrupt)

    def handle_interrupt(self, signum: int = signal.SIGINT, frame: Optional[Any] = None) -> None:
        if self.install_handler and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, signal.default_int_handler)
        self._kill_flag.set()
        print("\nCaught interrupt. Ctrl+C again to terminate.")

    def close(self) -> None:
        """Reinstall whatever SIGINT handler was active before this UI."""
        if self._previous_handler is not None and threading.current_thread() is threading.main_thread():
            signal.signal(signal.SIGINT, self._previous_handler)
            self._previous_handler = None

    def log_cg_start(self, residual_mag2: float, objective_value: float) -> None:
        print(f"CG start (residual2={residual_mag2:f}, objective={objective_value:f})")

    def log_cg_iteration(self, step_size: float, quad_value: float) -> None:
        print(f"CG iteration (stepSize={step_size:f}, quad={quad_value:f})")

    def log_new_mini_batch(self, epoch: int, batch: int) -> None:
        print(f"Next mini-batch (epoch={epoch}, batch={batch})")

    def log_damping(self, trust: float, coeff: float) -> None:
        print(f"DampingLearner: trust quotient is {trust:f}, damping is {coeff:f}")

    def log(self, sender: str, message: str) -> None:
        print(f"{sender}: {message}")

    def should_stop(self) -> bool:
        return self._kill_flag.is_set()
