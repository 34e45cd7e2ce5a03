# pipewrap/tests/test_shutdown.py
import signal
import threading

from pipewrap.shutdown import ShutdownCoordinator


class FakeSession:
    def __init__(self):
        self.stop_calls = 0
        self.finished = False
        self._callbacks = []

    def add_done_callback(self, fn):
        self._callbacks.append(fn)

    def finish(self):
        self.finished = True
        for fn in self._callbacks:
            fn()

    def stop(self):
        self.stop_calls += 1


def test_request_shutdown_stops_session_once():
    session = FakeSession()
    coordinator = ShutdownCoordinator(session, signals=()).install()
    coordinator.request_shutdown()
    coordinator.request_shutdown()

    assert coordinator.run() == 0
    assert coordinator.run() == 0
    assert session.stop_calls == 1
    assert coordinator.shutting_down


def test_session_ending_wakes_the_coordinator():
    session = FakeSession()
    coordinator = ShutdownCoordinator(session, signals=()).install()
    threading.Timer(0.1, session.finish).start()

    assert coordinator.run() == 0
    assert session.stop_calls == 1
    assert coordinator.received is None


def test_signal_triggers_drain_and_restores_handler():
    previous = signal.getsignal(signal.SIGUSR1)
    session = FakeSession()
    coordinator = ShutdownCoordinator(session, signals=(signal.SIGUSR1,)).install()
    main_ident = threading.main_thread().ident
    threading.Timer(0.1, signal.pthread_kill, args=(main_ident, signal.SIGUSR1)).start()

    assert coordinator.run() == 0
    assert coordinator.received == signal.SIGUSR1
    assert session.stop_calls == 1
    assert signal.getsignal(signal.SIGUSR1) == previous


def test_repeated_signals_are_ignored():
    session = FakeSession()
    coordinator = ShutdownCoordinator(session, signals=(signal.SIGUSR2,)).install()
    signal.raise_signal(signal.SIGUSR2)
    signal.raise_signal(signal.SIGUSR2)
    signal.raise_signal(signal.SIGUSR2)

    assert coordinator.run() == 0
    assert coordinator.ignored_signals == 2
    assert session.stop_calls == 1
