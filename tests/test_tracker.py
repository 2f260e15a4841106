from host_mcp.tracker import ActivityMonitor, CallActivityTracker, CallState


def test_initial_state():
    tracker = CallActivityTracker()
    assert tracker.state is CallState.IDLE
    assert tracker.tool_name is None
    assert tracker.started_at == 0.0
    assert tracker.elapsed_seconds() == 0.0
    assert tracker.consume_dirty() is False


def test_start_then_success():
    tracker = CallActivityTracker()
    tracker.on_call_started("sim_play")
    assert tracker.state is CallState.EXECUTING
    assert tracker.tool_name == "sim_play"
    assert tracker.consume_dirty() is True
    assert tracker.consume_dirty() is False

    start = tracker.started_at
    assert tracker.elapsed_seconds(start + 0.5) < tracker.elapsed_seconds(start + 1.0)

    tracker.on_call_completed(True)
    assert tracker.state is CallState.DONE
    assert tracker.consume_dirty() is True
    frozen = tracker.elapsed_seconds()
    assert tracker.elapsed_seconds(start + 100.0) == frozen


def test_failure_moves_to_error():
    tracker = CallActivityTracker()
    tracker.on_call_started("sim_set_speed")
    tracker.on_call_completed(False)
    assert tracker.state is CallState.ERROR
    assert tracker.tool_name == "sim_set_speed"


def test_reset_returns_to_idle():
    tracker = CallActivityTracker()
    tracker.on_call_started("echo")
    tracker.on_call_completed(True)
    tracker.consume_dirty()
    tracker.reset()
    assert tracker.state is CallState.IDLE
    assert tracker.tool_name is None
    assert tracker.started_at == 0.0
    assert tracker.consume_dirty() is True


def test_monitor_labels_and_done_hold():
    tracker = CallActivityTracker()
    monitor = ActivityMonitor(tracker)
    assert monitor.poll() is None

    tracker.on_call_started("sim_play")
    assert monitor.poll(tracker.started_at + 1.2) == "sim_play (1.2s)"

    tracker.on_call_completed(True)
    done_at = tracker.completed_at
    assert monitor.poll(done_at + 1.0) == "✓ sim_play"
    assert monitor.poll(done_at + 2.9) == "✓ sim_play"
    assert monitor.poll(done_at + 3.01) is None
    assert tracker.state is CallState.IDLE


def test_monitor_error_hold_is_longer():
    tracker = CallActivityTracker()
    monitor = ActivityMonitor(tracker)
    tracker.on_call_started("explode")
    tracker.on_call_completed(False)
    failed_at = tracker.completed_at
    assert monitor.poll(failed_at + 4.0) == "✗ explode"
    assert tracker.state is CallState.ERROR
    assert monitor.poll(failed_at + 5.01) is None
    assert tracker.state is CallState.IDLE
