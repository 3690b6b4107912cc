from camera_relay.camera_registry import CameraConfig, CameraRegistry
from camera_relay.liveness import LivenessConfig, LivenessMonitor, create_liveness_config


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_monitor(clock, cameras=("balkon",)):
    registry = CameraRegistry([CameraConfig(c) for c in cameras])
    monitor = LivenessMonitor(registry, LivenessConfig(check_interval=5.0, stale_timeout=10.0), clock=clock)
    changes = []
    monitor.add_listener(changes.append)
    return registry, monitor, changes


def test_camera_never_seen_is_inactive_and_not_reported():
    clock = FakeClock()
    _, monitor, changes = make_monitor(clock)

    assert monitor.evaluate() == []
    assert changes == []
    assert monitor.current_status("balkon").active is False
    assert monitor.current_status("nowhere").active is False


def test_status_flips_once_per_transition():
    clock = FakeClock()
    registry, monitor, changes = make_monitor(clock)

    registry.record_frame("balkon", clock.now)
    monitor.evaluate()
    assert [(s.camera_id, s.active) for s in changes] == [("balkon", True)]

    # Still fresh: no repeated notification
    clock.now += 5
    registry.record_frame("balkon", clock.now)
    monitor.evaluate()
    assert len(changes) == 1

    clock.now += 10
    monitor.evaluate()
    assert [(s.camera_id, s.active) for s in changes] == [("balkon", True), ("balkon", False)]

    clock.now += 5
    monitor.evaluate()
    assert len(changes) == 2


def test_status_only_changes_on_tick():
    clock = FakeClock()
    registry, monitor, changes = make_monitor(clock)

    monitor.evaluate()
    registry.record_frame("balkon", clock.now)
    assert monitor.current_status("balkon").active is False

    monitor.evaluate()
    status = monitor.current_status("balkon")
    assert status.active is True
    assert status.last_seen_at == clock.now


def test_listener_errors_do_not_stop_evaluation():
    clock = FakeClock()
    registry, monitor, changes = make_monitor(clock, cameras=("balkon", "drzwi"))

    def broken(status):
        raise RuntimeError("listener exploded")

    monitor.listeners.insert(0, broken)
    registry.record_frame("balkon", clock.now)
    registry.record_frame("drzwi", clock.now)

    changed = monitor.evaluate()
    assert {s.camera_id for s in changed} == {"balkon", "drzwi"}
    assert {s.camera_id for s in changes} == {"balkon", "drzwi"}


def test_all_statuses_and_config():
    clock = FakeClock()
    registry, monitor, _ = make_monitor(clock, cameras=("balkon", "drzwi"))
    registry.record_frame("drzwi", clock.now)
    monitor.evaluate()

    statuses = monitor.all_statuses()
    assert statuses["balkon"].to_dict() == {'camera_id': 'balkon', 'active': False, 'last_seen_at': None}
    assert statuses["drzwi"].active is True

    config = create_liveness_config({'liveness': {'stale_timeout': 3}})
    assert config.stale_timeout == 3.0
    assert config.check_interval == 5.0


def test_monitor_thread_starts_and_stops():
    clock = FakeClock()
    _, monitor, _ = make_monitor(clock)
    monitor.start()
    assert monitor.thread.is_alive()
    monitor.stop()
    assert monitor.thread is None
