"""WebSocket Manager for real-time execution monitoring."""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Dict, Set, Any, Optional
from queue import Queue, Empty
from fastapi import WebSocket, WebSocketDisconnect

from ..models.core import LogEntry, WorkflowExecution
from .logging import get_logger

logger = get_logger(__name__)


class WebSocketConnection:
    """Represents a WebSocket connection with metadata."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.utcnow()
        self.subscribed_executions: Set[str] = set()
        self.is_active = True


class WebSocketManager:
    """Manager for WebSocket connections and execution event broadcasting.

    Runs execute on worker threads, so they never touch the event loop
    directly: they call the ``queue_*`` methods, and a task started with
    ``start_broadcast_processor`` drains the queue on the loop.
    """

    def __init__(self):
        self._connections: Dict[str, WebSocketConnection] = {}
        self._execution_subscribers: Dict[str, Set[str]] = {}  # execution_id -> connection_ids
        self._broadcast_lock = asyncio.Lock()

        self._broadcast_queue: Queue = Queue()
        self._queue_processor_task: Optional[asyncio.Task] = None
        self._processing_broadcasts = False

        logger.info("WebSocketManager initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a new WebSocket connection and return its ID."""
        await websocket.accept()

        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = WebSocketConnection(websocket, connection_id)

        logger.info(f"WebSocket connection established: {connection_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": datetime.utcnow().isoformat(),
            "message": "WebSocket connection established successfully"
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        """Handle WebSocket disconnection and cleanup."""
        connection = self._connections.get(connection_id)
        if connection is None:
            return

        connection.is_active = False
        for execution_id in list(connection.subscribed_executions):
            await self.unsubscribe_from_execution(connection_id, execution_id)

        del self._connections[connection_id]
        logger.info(f"WebSocket connection disconnected and cleaned up: {connection_id}")

    async def subscribe_to_execution(self, connection_id: str, execution_id: str) -> bool:
        """Subscribe a connection to the events of one execution."""
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            logger.warning(f"Attempted to subscribe unknown or inactive connection: {connection_id}")
            return False

        connection.subscribed_executions.add(execution_id)
        self._execution_subscribers.setdefault(execution_id, set()).add(connection_id)

        logger.info(f"Connection {connection_id} subscribed to execution {execution_id}")

        await self._send_to_connection(connection_id, {
            "event_type": "subscription_confirmed",
            "execution_id": execution_id,
            "timestamp": datetime.utcnow().isoformat(),
            "message": f"Subscribed to execution {execution_id}"
        })
        return True

    async def unsubscribe_from_execution(self, connection_id: str, execution_id: str) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False

        connection.subscribed_executions.discard(execution_id)
        subscribers = self._execution_subscribers.get(execution_id)
        if subscribers is not None:
            subscribers.discard(connection_id)
            if not subscribers:
                del self._execution_subscribers[execution_id]

        logger.info(f"Connection {connection_id} unsubscribed from execution {execution_id}")
        return True

    async def broadcast_execution_event(self, execution_id: str, event_type: str, data: Dict[str, Any]) -> None:
        """Send an event to every subscriber of an execution."""
        if execution_id not in self._execution_subscribers:
            logger.debug(f"No subscribers for execution {execution_id}, skipping broadcast")
            return

        async with self._broadcast_lock:
            event = {
                "event_type": event_type,
                "execution_id": execution_id,
                "timestamp": datetime.utcnow().isoformat(),
                "data": data
            }

            subscribers = self._execution_subscribers.get(execution_id, set()).copy()
            disconnected = []
            for connection_id in subscribers:
                if not await self._send_to_connection(connection_id, event):
                    disconnected.append(connection_id)

            for connection_id in disconnected:
                await self.disconnect(connection_id)

            logger.debug(f"Broadcasted {event_type} event for execution {execution_id} to {len(subscribers)} subscribers")

    async def broadcast_log_entry(self, execution_id: str, log_entry: LogEntry) -> None:
        await self.broadcast_execution_event(execution_id, "log_entry", log_entry.model_dump(mode="json"))

    async def broadcast_execution_status(self, execution: WorkflowExecution) -> None:
        await self.broadcast_execution_event(
            execution.id,
            "execution_status_update",
            {
                "status": execution.status.value,
                "started_at": execution.started_at.isoformat(),
                "completed_at": execution.completed_at.isoformat() if execution.completed_at else None,
                "duration_ms": execution.duration_ms,
                "result_count": len(execution.results),
                "error_details": execution.error_details.model_dump() if execution.error_details else None
            }
        )

    async def _send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str))
            return True
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected during send: {connection_id}")
            connection.is_active = False
            return False
        except Exception as e:
            logger.error(f"Error sending WebSocket message to {connection_id}: {str(e)}")
            connection.is_active = False
            return False

    async def send_to_connection(self, connection_id: str, data: Dict[str, Any]) -> bool:
        return await self._send_to_connection(connection_id, data)

    def get_connection_count(self) -> int:
        return len([conn for conn in self._connections.values() if conn.is_active])

    def get_execution_subscriber_count(self, execution_id: str) -> int:
        return len(self._execution_subscribers.get(execution_id, set()))

    def get_connection_info(self) -> Dict[str, Any]:
        active_connections = [
            {
                "connection_id": conn_id,
                "connected_at": conn.connected_at.isoformat(),
                "subscribed_executions": list(conn.subscribed_executions)
            }
            for conn_id, conn in self._connections.items()
            if conn.is_active
        ]
        return {
            "total_connections": len(active_connections),
            "connections": active_connections,
            "execution_subscribers": {
                execution_id: len(subscribers)
                for execution_id, subscribers in self._execution_subscribers.items()
            }
        }

    def start_broadcast_processor(self):
        """Start the broadcast queue processor on the running event loop."""
        if not self._processing_broadcasts:
            self._processing_broadcasts = True
            self._queue_processor_task = asyncio.create_task(self._process_broadcast_queue())
            logger.info("WebSocket broadcast processor started")

    def stop_broadcast_processor(self):
        self._processing_broadcasts = False
        if self._queue_processor_task:
            self._queue_processor_task.cancel()
            logger.info("WebSocket broadcast processor stopped")

    async def _process_broadcast_queue(self):
        while self._processing_broadcasts:
            try:
                try:
                    broadcast_type, args = self._broadcast_queue.get_nowait()
                except Empty:
                    await asyncio.sleep(0.1)
                    continue

                if broadcast_type == "log_entry":
                    await self.broadcast_log_entry(*args)
                elif broadcast_type == "execution_status":
                    await self.broadcast_execution_status(*args)
                self._broadcast_queue.task_done()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error processing broadcast queue: {str(e)}")
                await asyncio.sleep(0.1)

    def queue_log_entry(self, execution_id: str, log_entry: LogEntry):
        """Queue a log entry for broadcasting from a worker thread."""
        self._broadcast_queue.put(("log_entry", (execution_id, log_entry)))

    def queue_execution_status(self, execution: WorkflowExecution):
        """Queue an execution status update for broadcasting from a worker thread."""
        self._broadcast_queue.put(("execution_status", (execution.model_copy(deep=True),)))

    def pending_broadcasts(self) -> int:
        return self._broadcast_queue.qsize()
