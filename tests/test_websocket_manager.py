"""Tests for WebSocket monitoring of executions."""

import json
from datetime import datetime

import pytest

from agent_pipeline.core.websocket_manager import WebSocketManager
from agent_pipeline.models.core import ExecutionStatusEnum, LogEntry, LogLevel, WorkflowExecution


class FakeWebSocket:
    def __init__(self, fail_sends=False):
        self.accepted = False
        self.sent = []
        self.fail_sends = fail_sends

    async def accept(self):
        self.accepted = True

    async def send_text(self, text):
        if self.fail_sends:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(text))

    def events(self):
        return [message["event_type"] for message in self.sent]


def log_entry(message="Starting Architect"):
    return LogEntry(timestamp=datetime.utcnow(), level=LogLevel.INFO, message=message, agent_id="A")


class TestWebSocketManager:
    """Test connections, subscriptions and broadcasts."""

    @pytest.mark.asyncio
    async def test_connect_and_subscribe(self):
        manager = WebSocketManager()
        websocket = FakeWebSocket()

        connection_id = await manager.connect(websocket)
        assert await manager.subscribe_to_execution(connection_id, "exec-1")

        assert websocket.accepted
        assert websocket.events() == ["connection_established", "subscription_confirmed"]
        assert manager.get_connection_count() == 1
        assert manager.get_execution_subscriber_count("exec-1") == 1

    @pytest.mark.asyncio
    async def test_log_entries_reach_subscribers_only(self):
        manager = WebSocketManager()
        subscriber, bystander = FakeWebSocket(), FakeWebSocket()
        subscriber_id = await manager.connect(subscriber)
        await manager.connect(bystander)
        await manager.subscribe_to_execution(subscriber_id, "exec-1")

        await manager.broadcast_log_entry("exec-1", log_entry())

        event = subscriber.sent[-1]
        assert event["event_type"] == "log_entry"
        assert event["execution_id"] == "exec-1"
        assert event["data"]["message"] == "Starting Architect"
        assert event["data"]["level"] == "info"
        assert bystander.events() == ["connection_established"]

    @pytest.mark.asyncio
    async def test_execution_status_broadcast(self):
        manager = WebSocketManager()
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe_to_execution(connection_id, "exec-1")
        execution = WorkflowExecution(
            id="exec-1", status=ExecutionStatusEnum.COMPLETED,
            started_at=datetime.utcnow(), completed_at=datetime.utcnow(), duration_ms=12
        )

        await manager.broadcast_execution_status(execution)

        data = websocket.sent[-1]["data"]
        assert websocket.sent[-1]["event_type"] == "execution_status_update"
        assert data["status"] == "completed"
        assert data["duration_ms"] == 12
        assert data["result_count"] == 0

    @pytest.mark.asyncio
    async def test_failed_send_disconnects(self):
        manager = WebSocketManager()
        websocket = FakeWebSocket()
        connection_id = await manager.connect(websocket)
        await manager.subscribe_to_execution(connection_id, "exec-1")
        websocket.fail_sends = True

        await manager.broadcast_log_entry("exec-1", log_entry())

        assert manager.get_connection_count() == 0
        assert manager.get_execution_subscriber_count("exec-1") == 0

    @pytest.mark.asyncio
    async def test_disconnect_cleans_up_subscriptions(self):
        manager = WebSocketManager()
        connection_id = await manager.connect(FakeWebSocket())
        await manager.subscribe_to_execution(connection_id, "exec-1")

        await manager.disconnect(connection_id)

        assert manager.get_connection_info() == {
            "total_connections": 0, "connections": [], "execution_subscribers": {}
        }

    def test_queue_from_worker_threads(self):
        manager = WebSocketManager()
        execution = WorkflowExecution(id="exec-1", started_at=datetime.utcnow())

        manager.queue_log_entry("exec-1", log_entry())
        manager.queue_execution_status(execution)

        assert manager.pending_broadcasts() == 2
