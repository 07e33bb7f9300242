"""WebSocket real-time notifications using Socket.IO.

The admin panel joins the ``admins`` room and refetches its prospect and
project lists whenever an ``invalidate`` event arrives.
"""

import socketio
import logging
from datetime import datetime
from typing import Set

from app.config import settings

logger = logging.getLogger(__name__)

ADMIN_ROOM = "admins"

# Create Socket.IO async server
sio = socketio.AsyncServer(
    async_mode='asgi',
    cors_allowed_origins='*' if settings.CORS_ORIGINS == '*' else settings.CORS_ORIGINS.split(','),
    logger=False,
    engineio_logger=False
)

# Socket.IO ASGI app
socket_app = socketio.ASGIApp(
    sio,
    socketio_path='/socket.io'
)

# Sessions currently in the admin room
admin_sessions: Set[str] = set()


def get_socket_app():
    """Get the Socket.IO ASGI app for mounting."""
    return socket_app


# Socket.IO Event Handlers

@sio.event
async def connect(sid, environ):
    logger.info(f"Client connected: {sid}")
    await sio.emit('connected', {
        'message': 'Connected to Prospect Pipeline',
        'sid': sid
    }, room=sid)


@sio.event
async def disconnect(sid):
    logger.info(f"Client disconnected: {sid}")
    admin_sessions.discard(sid)


@sio.event
async def join_admin(sid, data=None):
    """Join the admin room to receive list invalidations."""
    await sio.enter_room(sid, ADMIN_ROOM)
    admin_sessions.add(sid)

    logger.info(f"Client {sid} joined admin room")
    await sio.emit('joined_admin', {'message': 'Joined admin room'}, room=sid)


@sio.event
async def ping(sid, data):
    """Handle ping for keepalive."""
    await sio.emit('pong', {
        'timestamp': (data or {}).get('timestamp')
    }, room=sid)


# Notification Helper Functions

async def _invalidate(keys, payload: dict):
    message = {
        'type': 'invalidate',
        'keys': keys,
        'timestamp': datetime.utcnow().isoformat(),
        **payload
    }
    try:
        await sio.emit('invalidate', message, room=ADMIN_ROOM)
    except Exception as e:
        logger.warning(f"Failed to emit invalidate event: {e}")


async def notify_prospect_updated(prospect_id: str, status: str):
    """Tell admin clients a prospect changed state."""
    await _invalidate(['prospects', f'prospect:{prospect_id}'], {
        'prospect_id': prospect_id,
        'status': status
    })
    logger.info(f"Notified admins: prospect {prospect_id} -> {status}")


async def notify_project_published(project_slug: str, prospect_id: str = None):
    """Tell admin clients a project list changed."""
    await _invalidate(['projects', f'project:{project_slug}'], {
        'project_slug': project_slug,
        'prospect_id': prospect_id
    })
    logger.info(f"Notified admins: project {project_slug} updated")


def get_connection_stats():
    return {
        'admin_connections': len(admin_sessions)
    }
