"""
DLive chat client

This module talks to the DLive GraphQL API on behalf of the bot. It sends chat
messages through the HTTP GraphQL endpoint and listens to a streamer's chat
over the ``graphql-ws`` WebSocket subscription protocol.

Key features:
- Chat message mutation with a configurable payload shape
- Display name to username resolution
- Persistent chat subscription with constant-delay reconnection
- Tolerant parsing of chat events across schema variations
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from tokens import TokenError, TokenManager

# Configure logging
logger = logging.getLogger(__name__)

DLIVE_GRAPHQL_URL = "https://graphigo.prd.dlive.tv/"
DLIVE_WS_URL = "wss://graphigostream.prd.dlive.tv/"
GRAPHQL_WS_SUBPROTOCOL = "graphql-ws"


class GatewayError(Exception):
    """Raised when the GraphQL endpoint rejects a call. Carries the raw status and body."""

    def __init__(self, status: int, body: Any):
        self.status = status
        self.body = body
        super().__init__(f"GraphQL error ({status}): {json.dumps(body, default=str)[:500]}")


class ChatTransportError(Exception):
    """Raised when the chat subscription connection fails."""
    pass


class EventParseError(Exception):
    """Raised when a subscription frame carries no recognizable chat event."""
    pass


def authorization_header(token: str, scheme: str = "Bearer") -> str:
    """Build the Authorization header value. An empty scheme sends the raw token."""
    return f"{scheme} {token}" if scheme else token


# ---- Outbound messages ----

SEND_STREAMCHAT_MUTATION = """
mutation SendStreamChatMessage($input: SendStreamchatMessageInput!) {
  sendStreamchatMessage(input: $input) {
    err {
      code
      message
    }
    message {
      type
      ... on ChatText {
        id
        content
        createdAt
      }
    }
  }
}
"""

SEND_CHAT_MUTATION = """
mutation SendChat($streamer: String!, $message: String!) {
  sendChatMessage(streamer: $streamer, message: $message) {
    id
    content
    createdAt
  }
}
"""

USER_BY_DISPLAYNAME_QUERY = """
query UserByDisplayName($displayname: String!) {
  userByDisplayName(displayname: $displayname) {
    username
    displayname
  }
}
"""


@dataclass(frozen=True)
class MutationSchema:
    """
    Shape of the send-message mutation.

    Deployments disagree on field names and on whether arguments are wrapped
    in an input object, so the document and field names are configuration.
    A ``None`` role or subscribing field leaves that argument out.
    """

    document: str = SEND_STREAMCHAT_MUTATION
    result_field: str = "sendStreamchatMessage"
    input_variable: Optional[str] = "input"
    streamer_field: str = "streamer"
    message_field: str = "message"
    role_field: Optional[str] = "roomRole"
    subscribing_field: Optional[str] = "subscribing"
    default_role: str = "Member"

    def build_variables(self, streamer: str, message: str, role: Optional[str] = None,
                        subscribing: bool = False) -> Dict[str, Any]:
        fields: Dict[str, Any] = {
            self.streamer_field: streamer,
            self.message_field: message,
        }
        if self.role_field:
            fields[self.role_field] = role or self.default_role
        if self.subscribing_field:
            fields[self.subscribing_field] = subscribing
        if self.input_variable:
            return {self.input_variable: fields}
        return fields


def schema_for_style(style: str, default_role: str = "Member") -> MutationSchema:
    """
    Return the mutation schema for a named payload style.

    ``input`` sends ``sendStreamchatMessage(input: {...})`` with role and
    subscribing flags; ``simple`` sends ``sendChatMessage(streamer, message)``.
    """
    if style == "input":
        return MutationSchema(default_role=default_role)
    if style == "simple":
        return MutationSchema(
            document=SEND_CHAT_MUTATION,
            result_field="sendChatMessage",
            input_variable=None,
            role_field=None,
            subscribing_field=None,
            default_role=default_role,
        )
    raise ValueError(f"Unknown mutation style: {style}")


@dataclass
class DeliveryResult:
    """What was sent and what DLive acknowledged."""

    payload: Dict[str, Any]
    response: Any


class DLiveGateway:
    """
    Outbound GraphQL calls to DLive.

    Every call asks the token manager for a valid token first. Nothing is
    retried here; callers decide what a failure means.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        graphql_url: str = DLIVE_GRAPHQL_URL,
        schema: Optional[MutationSchema] = None,
        auth_scheme: str = "Bearer",
        timeout: float = 10.0,
    ):
        self.token_manager = token_manager
        self.graphql_url = graphql_url
        self.schema = schema or MutationSchema()
        self.auth_scheme = auth_scheme
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._usernames: Dict[str, str] = {}

    async def send_message(self, target: str, text: str, role: Optional[str] = None,
                           subscribing: bool = False) -> DeliveryResult:
        """
        Post one chat message into a streamer's chat.

        Args:
            target: Streamer username whose chat receives the message
            text: Message content
            role: Room role to post as (schema default when omitted)
            subscribing: Subscribing flag passed through to the mutation

        Returns:
            The exact payload sent and the mutation result

        Raises:
            GatewayError: On a non-success status, a GraphQL error array, or a mutation-level error
            TokenError: If no valid token can be obtained
            ValueError: If target or text is empty
        """
        if not target or not text:
            raise ValueError("target and text are required")

        token = await self.token_manager.ensure_valid_access_token()
        payload = {
            "query": self.schema.document,
            "variables": self.schema.build_variables(target, text, role, subscribing),
        }

        status, body = await self._post_graphql(payload, token)
        data = body.get("data") or {}
        result = data.get(self.schema.result_field) if isinstance(data, dict) else None
        if isinstance(result, dict) and result.get("err"):
            logger.error(f"Chat message to {target} rejected: {result['err']}")
            raise GatewayError(status, body)

        logger.info(f"Sent chat message to {target}")
        return DeliveryResult(payload=payload, response=result)

    async def resolve_username(self, display_name: str) -> str:
        """
        Map a display name to the username the chat API expects.

        Falls back to the lower-cased display name when the lookup fails. Only
        answers from the API are cached, so a failed call is retried next time.
        """
        key = display_name.strip()
        if key in self._usernames:
            return self._usernames[key]

        username = key.lower()
        try:
            _, body = await self._post_graphql(
                {"query": USER_BY_DISPLAYNAME_QUERY, "variables": {"displayname": key}}
            )
        except GatewayError as e:
            logger.warning(f"Could not resolve '{key}' ({e.status}); using '{username}'")
            return username

        user = (body.get("data") or {}).get("userByDisplayName")
        if isinstance(user, dict) and user.get("username"):
            username = user["username"]
        else:
            logger.warning(f"User '{key}' not found; using '{username}'")

        self._usernames[key] = username
        return username

    async def _post_graphql(self, payload: Dict[str, Any],
                            token: Optional[str] = None) -> Tuple[int, Dict[str, Any]]:
        """
        POST one GraphQL document.

        Returns:
            The HTTP status and decoded body of a successful call

        Raises:
            GatewayError: On network errors, non-2xx status, or a non-empty ``errors`` array
        """
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = authorization_header(token, self.auth_scheme)

        try:
            async with aiohttp.ClientSession(timeout=self.timeout) as session:
                async with session.post(self.graphql_url, json=payload, headers=headers) as response:
                    status = response.status
                    text = await response.text()
        except aiohttp.ClientError as e:
            logger.error(f"Network error calling DLive GraphQL: {e}")
            raise GatewayError(0, str(e)) from e
        except asyncio.TimeoutError as e:
            logger.error("Timed out calling DLive GraphQL")
            raise GatewayError(0, "timeout") from e

        try:
            body = json.loads(text) if text else {}
        except json.JSONDecodeError:
            body = {"raw": text}
        if not isinstance(body, dict):
            body = {"raw": body}

        if not 200 <= status < 300 or body.get("errors"):
            raise GatewayError(status, body)
        return status, body


# ---- Inbound chat ----

STREAM_MESSAGE_SUBSCRIPTION = """
subscription StreamMessageReceived($streamer: String!) {
  streamMessageReceived(streamer: $streamer) {
    type
    ... on ChatText {
      id
      content
      sender {
        username
        displayname
      }
    }
  }
}
"""

EVENT_FIELDS = ("streamMessageReceived", "chatMessageReceived", "streamChatMessage", "chatMessage")
TEXT_FIELDS = ("content", "message", "text", "body")
SENDER_FIELDS = ("sender", "user", "author")
USERNAME_FIELDS = ("username", "displayname", "displayName", "name")


class EventKind(str, Enum):
    TEXT = "text"
    OTHER = "other"


@dataclass
class ChatEvent:
    """One inbound chat event."""

    kind: EventKind
    content: str = ""
    sender_username: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_text(self) -> bool:
        return self.kind == EventKind.TEXT


def _first_str(item: Dict[str, Any], names: Tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = item.get(name)
        if isinstance(value, str):
            return value
    return None


def _event_from_item(item: Dict[str, Any]) -> ChatEvent:
    content = _first_str(item, TEXT_FIELDS)

    sender_username = None
    for name in SENDER_FIELDS:
        sender = item.get(name)
        if isinstance(sender, dict):
            sender_username = _first_str(sender, USERNAME_FIELDS)
            break
    if sender_username is None:
        sender_username = _first_str(item, ("username", "senderUsername", "sender"))

    if content is None:
        return ChatEvent(kind=EventKind.OTHER, sender_username=sender_username, raw=item)
    return ChatEvent(kind=EventKind.TEXT, content=content, sender_username=sender_username, raw=item)


def parse_chat_events(payload: Any) -> List[ChatEvent]:
    """
    Extract chat events from a subscription ``data`` payload.

    The event field may hold a single event or a list of them.

    Raises:
        EventParseError: If the payload has no recognizable event field
    """
    if not isinstance(payload, dict):
        raise EventParseError("payload is not an object")
    data = payload.get("data")
    if not isinstance(data, dict):
        raise EventParseError(f"payload has no data: {payload.get('errors')}")

    node: Any = None
    for name in EVENT_FIELDS:
        if name in data:
            node = data[name]
            break
    else:
        if len(data) == 1:
            node = next(iter(data.values()))

    if node is None:
        raise EventParseError(f"no chat event field in {sorted(data)}")

    items = node if isinstance(node, list) else [node]
    events = [_event_from_item(item) for item in items if isinstance(item, dict)]
    if not events:
        raise EventParseError("chat event field holds no objects")
    return events


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISPATCHING = "dispatching"


EventHandler = Callable[[ChatEvent], Awaitable[Any]]


class ChatListener:
    """
    Keeps a chat subscription open for one streamer.

    The listener runs a single task that connects, forwards events, and on any
    failure waits a fixed delay before connecting again. It only ends when
    ``stop()`` is called.

    Attributes:
        status: Current session status
        target: Streamer username being listened to
        retry_count: Failed or dropped connections since the last acknowledged one
    """

    def __init__(
        self,
        token_manager: TokenManager,
        ws_url: str = DLIVE_WS_URL,
        auth_scheme: str = "Bearer",
        reconnect_delay: float = 3.0,
        open_timeout: float = 10.0,
        connect: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self.token_manager = token_manager
        self.ws_url = ws_url
        self.auth_scheme = auth_scheme
        self.reconnect_delay = reconnect_delay
        self.open_timeout = open_timeout
        self._connect = connect or websockets.connect

        self.status = SessionStatus.DISCONNECTED
        self.target: Optional[str] = None
        self.retry_count = 0

        self._handler: Optional[EventHandler] = None
        self._task: Optional[asyncio.Task] = None
        self._websocket: Optional[Any] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def is_connected(self) -> bool:
        return self.status in (SessionStatus.CONNECTED, SessionStatus.DISPATCHING)

    def describe(self) -> Dict[str, Any]:
        return {
            "running": self.is_running,
            "status": self.status.value,
            "target": self.target,
            "retry_count": self.retry_count,
        }

    async def start(self, target: str, on_event: EventHandler) -> bool:
        """
        Begin listening to ``target``'s chat.

        Returns:
            False if a listen loop is already active, True if one was started
        """
        if self.is_running:
            logger.debug(f"Listener already active for {self.target}; ignoring start")
            return False

        self.target = target
        self._handler = on_event
        self.retry_count = 0
        self._task = asyncio.create_task(self._run(), name=f"dlive-listener-{target}")
        logger.info(f"Chat listener started for {target}")
        return True

    async def stop(self) -> None:
        """Tear down the connection and cancel any pending reconnect."""
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._close_websocket()
        self.status = SessionStatus.DISCONNECTED
        logger.info("Chat listener stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self._connect_and_listen()
                logger.info("Chat subscription ended")
            except TokenError as e:
                logger.error(f"Cannot open chat subscription without a valid token: {e}")
            except (ChatTransportError, WebSocketException, OSError, asyncio.TimeoutError) as e:
                logger.error(f"Chat connection failed: {e!r}")
            except Exception as e:
                logger.exception(f"Unexpected error in chat listener: {e}")
            finally:
                self.status = SessionStatus.DISCONNECTED
                await self._close_websocket()

            self.retry_count += 1
            logger.info(f"Reconnecting in {self.reconnect_delay} seconds... (attempt {self.retry_count})")
            await asyncio.sleep(self.reconnect_delay)

    async def _connect_and_listen(self) -> None:
        self.status = SessionStatus.CONNECTING
        token = await self.token_manager.ensure_valid_access_token()

        logger.info(f"Connecting to DLive chat for {self.target}: {self.ws_url}")
        websocket = await self._connect(
            self.ws_url,
            subprotocols=[GRAPHQL_WS_SUBPROTOCOL],
            open_timeout=self.open_timeout,
        )
        self._websocket = websocket

        await self._send(websocket, {
            "type": "connection_init",
            "payload": {"authorization": authorization_header(token, self.auth_scheme)},
        })
        await asyncio.wait_for(self._wait_for_ack(websocket), timeout=self.open_timeout)

        self.status = SessionStatus.CONNECTED
        self.retry_count = 0
        logger.info(f"Connected to DLive chat for {self.target}")

        await self._send(websocket, {
            "id": "1",
            "type": "start",
            "payload": {
                "operationName": "StreamMessageReceived",
                "query": STREAM_MESSAGE_SUBSCRIPTION,
                "variables": {"streamer": self.target},
            },
        })

        try:
            async for message in websocket:
                if await self._handle_frame(message):
                    break
        except ConnectionClosed as e:
            logger.info(f"Chat WebSocket closed: {e}")

    async def _wait_for_ack(self, websocket: Any) -> None:
        while True:
            frame = self._decode(await websocket.recv())
            frame_type = frame.get("type")
            if frame_type == "connection_ack":
                return
            if frame_type in ("connection_error", "error"):
                raise ChatTransportError(f"Connection rejected: {frame.get('payload')}")
            logger.debug(f"Ignoring {frame_type} frame before ack")

    async def _handle_frame(self, message: Any) -> bool:
        """Process one frame. Returns True when the server completed the subscription."""
        try:
            frame = self._decode(message)
        except EventParseError as e:
            logger.debug(f"Dropping undecodable frame: {e}")
            return False

        frame_type = frame.get("type")
        if frame_type == "ka":
            return False
        if frame_type == "data":
            try:
                events = parse_chat_events(frame.get("payload"))
            except EventParseError as e:
                logger.debug(f"Dropping chat frame: {e}")
                return False
            for event in events:
                await self._dispatch(event)
            return False
        if frame_type in ("error", "connection_error"):
            raise ChatTransportError(f"Subscription error: {frame.get('payload')}")
        if frame_type == "complete":
            logger.info("Server completed the chat subscription")
            return True

        logger.debug(f"Unknown frame type: {frame_type}")
        return False

    async def _dispatch(self, event: ChatEvent) -> None:
        if self._handler is None:
            return
        self.status = SessionStatus.DISPATCHING
        try:
            await self._handler(event)
        except Exception as e:
            logger.exception(f"Chat event handler failed: {e}")
        finally:
            self.status = SessionStatus.CONNECTED

    @staticmethod
    def _decode(message: Any) -> Dict[str, Any]:
        if isinstance(message, bytes):
            message = message.decode("utf-8", errors="replace")
        try:
            frame = json.loads(message)
        except (TypeError, json.JSONDecodeError) as e:
            raise EventParseError(f"invalid JSON: {e}") from e
        if not isinstance(frame, dict):
            raise EventParseError("frame is not an object")
        return frame

    @staticmethod
    async def _send(websocket: Any, frame: Dict[str, Any]) -> None:
        await websocket.send(json.dumps(frame))

    async def _close_websocket(self) -> None:
        websocket, self._websocket = self._websocket, None
        if websocket is None:
            return
        try:
            await websocket.close()
        except Exception as e:
            logger.debug(f"Error closing chat WebSocket: {e}")
