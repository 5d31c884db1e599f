"""Runtime: session lifecycle, triggers, concurrency, events and the engine entrypoint."""
