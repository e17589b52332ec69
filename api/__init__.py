"""HTTP and live-channel surface of the notification service."""
