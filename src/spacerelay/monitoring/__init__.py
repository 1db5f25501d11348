"""Session monitoring: lifecycle events dispatched to logs, files and the console.

Usage::

    from spacerelay.monitoring.event_bus import EventBus, EventType, LoggingSink

    bus = EventBus(session_id="abc123")
    bus.add_sink(LoggingSink())
    await bus.emit(EventType.ROOM_SELECTED, {"url": "https://twitter.com/i/spaces/1"})
"""
