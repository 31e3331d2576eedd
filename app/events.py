import logging

from flask import request
from flask_socketio import emit, join_room
from app import socketio
from app.repositories import get_datastore
from app.firestore_models import utcnow

logger = logging.getLogger(__name__)

# sid -> user_id of every authenticated connection
connected_users = {}

ALL_USERS_ROOM = 'all_users'
ROLE_ROOMS = {'student': 'students', 'admin': 'admins'}


def user_room(user_id):
    return f'user_{user_id}'


def branch_room(branch):
    return f'branch_{branch}'


def audience_room(notice):
    """Room that should receive a notice, by its target audience."""
    audience = notice.target_audience
    if audience == 'students':
        return ROLE_ROOMS['student']
    if audience == 'admins':
        return ROLE_ROOMS['admin']
    if audience == 'specific_branch' and notice.target_branch:
        return branch_room(notice.target_branch)
    return ALL_USERS_ROOM


@socketio.on('connect')
def handle_connect(auth=None):
    user_id = (auth or {}).get('user_id')
    user = get_datastore().users.find_by_id(user_id) if user_id else None
    if user is None:
        logger.info('Rejected socket connection for unknown user %r', user_id)
        return False

    connected_users[request.sid] = user.id
    join_room(ALL_USERS_ROOM)
    join_room(user_room(user.id))
    if user.user_type in ROLE_ROOMS:
        join_room(ROLE_ROOMS[user.user_type])
    if user.branch:
        join_room(branch_room(user.branch))

    emit('authenticated', {'user_id': user.id, 'name': user.name, 'user_type': user.user_type})


@socketio.on('disconnect')
def handle_disconnect(*args):
    connected_users.pop(request.sid, None)


@socketio.on('ping')
def handle_ping(data=None):
    emit('pong', {'timestamp': utcnow().isoformat()})


# ---------------------------------------------------------------------------
# Broadcasts, called by the service layer after a mutation
# ---------------------------------------------------------------------------

def broadcast_notice(notice, event='new_notice'):
    socketio.emit(event, notice.to_json(), to=audience_room(notice))


def broadcast_notice_updated(notice):
    broadcast_notice(notice, event='notice_updated')


def broadcast_notice_deleted(notice_id):
    socketio.emit('notice_deleted', {'id': notice_id}, to=ALL_USERS_ROOM)


def push_notification(notification):
    socketio.emit('notification', notification.to_json(), to=user_room(notification.user_id))


def connected_user_ids():
    return set(connected_users.values())
