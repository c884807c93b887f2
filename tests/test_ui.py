from __future__ import annotations

import signal
import threading

from hessfree.interfaces import UI
from hessfree.ui import ConsoleUI, NullUI


def test_null_ui_never_stops() -> None:
    ui = NullUI()
    assert isinstance(ui, UI)
    ui.log_cg_start(1.0, 2.0)
    ui.log_cg_iteration(0.1, -3.0)
    ui.log_new_mini_batch(0, 1)
    ui.log_damping(0.5, 1.0)
    ui.log("Trainer", "hello")
    assert ui.should_stop() is False


def test_console_ui_prints_events(capsys) -> None:
    ui = ConsoleUI(install_handler=False)
    ui.log_new_mini_batch(2, 7)
    ui.log_cg_iteration(0.25, -1.5)
    ui.log_damping(0.8, 0.666667)
    ui.log("Trainer", "done")
    out = capsys.readouterr().out.splitlines()
    assert out == [
        "Next mini-batch (epoch=2, batch=7)",
        "CG iteration (stepSize=0.250000, quad=-1.500000)",
        "DampingLearner: trust quotient is 0.800000, damping is 0.666667",
        "Trainer: done",
    ]


def test_console_ui_interrupt_sets_stop_flag(capsys) -> None:
    ui = ConsoleUI(install_handler=False)
    assert ui.should_stop() is False
    ui.handle_interrupt()
    assert ui.should_stop() is True
    assert "Caught interrupt" in capsys.readouterr().out


def test_console_ui_installs_and_restores_sigint_handler() -> None:
    if threading.current_thread() is not threading.main_thread():
        return
    before = signal.getsignal(signal.SIGINT)
    ui = ConsoleUI()
    try:
        assert signal.getsignal(signal.SIGINT) == ui.handle_interrupt
        ui.handle_interrupt(signal.SIGINT, None)
        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler
        assert ui.should_stop()
    finally:
        ui.close()
    assert signal.getsignal(signal.SIGINT) is before
