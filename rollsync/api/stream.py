"""Dashboard subscription endpoints: long-poll mailboxes and Server-Sent Events."""
import json
from flask import Blueprint, Response, current_app, request, stream_with_context
from flask_jwt_extended import jwt_required
from rollsync.utils.decorators import instructor_required
from rollsync.utils.helpers import get_engine, success_response

stream_bp = Blueprint('stream', __name__)


def format_sse(message) -> str:
    """Encode a subscription message as one SSE event."""
    payload = message.to_dict()
    return f"event: {payload['type']}\ndata: {json.dumps(payload['data'], separators=(',', ':'))}\n\n"


def event_stream(subscription, heartbeat: float = 15):
    """Yield SSE frames until the subscription closes; always releases it."""
    try:
        while True:
            message = subscription.get(timeout=heartbeat)
            if message is not None:
                yield format_sse(message)
            elif subscription.closed:
                yield "event: end\ndata: {}\n\n"
                break
            else:
                yield ": keep-alive\n\n"
    finally:
        subscription.close()


@stream_bp.route('/<session_id>/subscriptions', methods=['POST'])
@jwt_required()
@instructor_required
def subscribe(session_id):
    """Open a polled subscription; the reply carries the phase and a full snapshot."""
    engine = get_engine()
    subscription = engine.subscribe(session_id)
    messages = [m.to_dict() for m in subscription.drain()]
    snapshot = next((m['data'] for m in messages if m['type'] == 'snapshot'), None)
    if snapshot is None:
        # a full mailbox can drop the opening snapshot before we drain it
        snapshot = engine.snapshot(session_id).to_dict()
    return success_response(
        data={
            'subscription_id': subscription.id,
            'phase': snapshot['phase'],
            'snapshot': snapshot,
            'closed': subscription.closed,
        },
        message='Subscribed',
        status_code=201
    )


@stream_bp.route('/<session_id>/subscriptions/<subscription_id>', methods=['GET'])
@jwt_required()
@instructor_required
def poll(session_id, subscription_id):
    """Drain pending messages; ``wait`` seconds of long-poll when empty."""
    subscription = get_engine().get_subscription(session_id, subscription_id)
    wait = min(request.args.get('wait', 0, type=float), 30)
    messages = subscription.drain()
    if not messages and wait > 0:
        first = subscription.get(timeout=wait)
        messages = ([first] if first is not None else []) + subscription.drain()
    return success_response(data={
        'messages': [m.to_dict() for m in messages],
        'closed': subscription.closed,
        'dropped': subscription.dropped,
    })


@stream_bp.route('/<session_id>/subscriptions/<subscription_id>', methods=['DELETE'])
@jwt_required()
@instructor_required
def unsubscribe(session_id, subscription_id):
    """Stop deliveries to this subscription."""
    get_engine().unsubscribe(session_id, subscription_id)
    return success_response(message='Unsubscribed')


@stream_bp.route('/<session_id>/events', methods=['GET'])
@jwt_required()
@instructor_required
def events(session_id):
    """Server-Sent Events feed of snapshots, deltas and credentials."""
    subscription = get_engine().subscribe(session_id)
    heartbeat = current_app.config.get('SSE_HEARTBEAT', 15)
    return Response(
        stream_with_context(event_stream(subscription, heartbeat)),
        mimetype='text/event-stream',
        headers={'Cache-Control': 'no-cache', 'X-Accel-Buffering': 'no'}
    )
