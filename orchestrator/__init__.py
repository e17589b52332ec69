"""Service wiring, configuration and scheduling for the notification server."""
