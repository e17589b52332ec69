"""Flask application exposing the notification API and live channels.

HTTP routes serve the pull side (unread listing, mark-read, send) and
Flask-SocketIO carries the push side: a client connects, emits ``register``
with its user id and from then on receives ``notification`` and
``labStatusUpdate`` events addressed to it.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Tuple

from flask import Flask, Response, jsonify, request
from flask_cors import CORS
from flask_socketio import SocketIO, join_room, leave_room

from agents.reminders import schedule_appointment_reminders
from connector import DocumentNotFoundError, StoreError
from notifications.errors import ValidationError
from notifications.models import coerce_datetime

if TYPE_CHECKING:  # pragma: no cover
    from orchestrator.main import NotificationService

logger = logging.getLogger(__name__)


class SocketIOChannel:
    """Pushes payloads over Socket.IO connections."""

    def __init__(self, socketio: SocketIO) -> None:
        self._socketio = socketio

    def push(self, channel_id: str, event: str, payload: Mapping[str, Any]) -> None:
        self._socketio.emit(event, dict(payload), to=channel_id)

    def push_all(self, event: str, payload: Mapping[str, Any]) -> None:
        self._socketio.emit(event, dict(payload))


def _json_body() -> dict:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, dict):
        raise ValidationError("request body must be a JSON object")
    return payload


def create_app(service: "NotificationService") -> Tuple[Flask, SocketIO]:
    settings = service.settings
    app = Flask(__name__)
    CORS(app, origins=settings.cors_origins)
    socketio = SocketIO(app, cors_allowed_origins=settings.cors_origins, async_mode="threading")
    service.dispatcher.attach_channel(SocketIOChannel(socketio))
    registry = service.registry

    @app.errorhandler(ValidationError)
    def handle_validation_error(exc: ValidationError) -> Tuple[Response, int]:
        return jsonify({"error": str(exc)}), 400

    @app.errorhandler(DocumentNotFoundError)
    def handle_not_found(exc: DocumentNotFoundError) -> Tuple[Response, int]:
        return jsonify({"error": str(exc)}), 404

    @app.errorhandler(StoreError)
    def handle_store_error(exc: StoreError) -> Tuple[Response, int]:
        logger.error("Document store failure on %s %s: %s", request.method, request.path, exc)
        return jsonify({"error": str(exc)}), 500

    @app.route("/health", methods=["GET"])
    def health() -> Response:
        return jsonify({"status": "ok", "connections": len(registry)})

    @app.route("/api/tasks", methods=["GET"])
    def tasks() -> Response:
        """Return the sweep history as JSON."""
        return jsonify(service.task_logger.history())

    @app.route("/api/notifications/<user_id>", methods=["GET"])
    def unread_notifications(user_id: str) -> Response:
        notifications = service.notifications.list_unread(user_id)
        return jsonify([notification.to_payload() for notification in notifications])

    @app.route("/api/notifications/markAllRead", methods=["POST"])
    def mark_all_read() -> Response:
        user_id = _json_body().get("userId")
        if not user_id:
            raise ValidationError("userId is required")
        service.notifications.mark_all_read(str(user_id))
        return jsonify({"success": True})

    @app.route("/api/notifications/<notification_id>/read", methods=["POST"])
    def mark_read(notification_id: str) -> Response:
        service.notifications.mark_read(notification_id)
        return jsonify({"success": True})

    @app.route("/api/send-notification", methods=["POST"])
    def send_notification() -> Tuple[str, int]:
        service.dispatcher.send(_json_body())
        return "Notification sent", 200

    @app.route("/api/lab-status-notification", methods=["POST"])
    def lab_status_notification() -> Tuple[str, int]:
        body = _json_body()
        service.dispatcher.notify_lab_status(
            str(body.get("labId") or ""), str(body.get("status") or ""), body.get("remarks")
        )
        return "Lab status notification sent", 200

    @app.route("/api/reminders", methods=["POST"])
    def schedule_reminders() -> Tuple[Response, int]:
        body = _json_body()
        for key in ("appointmentId", "doctorId", "patientId", "appointmentTime"):
            if not body.get(key):
                raise ValidationError(f"{key} is required")
        try:
            appointment_time = coerce_datetime(body["appointmentTime"], settings.tz)
        except (TypeError, ValueError) as exc:
            raise ValidationError(f"appointmentTime is invalid: {exc}") from exc

        reminder_set_id, created = schedule_appointment_reminders(
            service.store,
            appointment_id=str(body["appointmentId"]),
            doctor_id=str(body["doctorId"]),
            patient_id=str(body["patientId"]),
            appointment_time=appointment_time,
            doctor_name=str(body.get("doctorName") or ""),
            patient_name=str(body.get("patientName") or ""),
            consultation_type=str(body.get("type") or ""),
        )
        return jsonify({"id": reminder_set_id}), 201 if created else 200

    @socketio.on("register")
    def handle_register(data: Any) -> dict:
        user_id = data.get("userId") if isinstance(data, dict) else data
        if not user_id:
            return {"success": False, "error": "userId is required"}
        user_id = str(user_id)
        previous = registry.register(user_id, request.sid)
        join_room(user_id)
        if previous:
            leave_room(user_id, sid=previous)
        return {"success": True}

    @socketio.on("disconnect")
    def handle_disconnect(*_args: Any) -> None:
        registry.unregister(request.sid)

    return app, socketio
