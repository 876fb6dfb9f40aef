"""
Registry of live protocol sessions.

The protocol client itself (connection, encryption, transport) lives outside
this package; a connected client is registered here as a ``SessionHandle``
together with its event source. Registering a session also starts the
session's message store.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol

from wa_store.events import EventEmitter, EventSink
from wa_store.message_handler import MessageHandler

logger = logging.getLogger(__name__)


class SessionHandle(Protocol):
    """Surface of a connected protocol client used by this service."""

    async def send_message(self, jid: str, content: Dict[str, Any], options: Optional[Dict[str, Any]] = None) -> Any:
        ...

    async def chat_modify(self, modification: Dict[str, Any], jid: str) -> Any:
        ...

    async def update_media_message(self, message: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def download_media_message(self, message: Dict[str, Any], reupload_request=None) -> bytes:
        ...

    async def on_whatsapp(self, *jids: str) -> List[Dict[str, Any]]:
        ...

    async def group_metadata(self, jid: str) -> Dict[str, Any]:
        ...

    async def send_presence_update(self, presence: str, jid: Optional[str] = None) -> None:
        ...


class WhatsappService:
    """Maps session ids to live handles and their message stores."""

    def __init__(self, sink: Optional[EventSink] = None, session_factory=None) -> None:
        self._sink = sink
        self._session_factory = session_factory
        self._sessions: Dict[str, SessionHandle] = {}
        self._stores: Dict[str, MessageHandler] = {}

    def register_session(self, session_id: str, handle: SessionHandle, events: EventEmitter) -> MessageHandler:
        """Register a connected session and start mirroring its messages."""
        if session_id in self._sessions:
            self.remove_session(session_id)

        store = MessageHandler(
            session_id,
            events,
            sink=self._sink,
            session_factory=self._session_factory,
        )
        store.listen()
        self._sessions[session_id] = handle
        self._stores[session_id] = store
        logger.info(f"Session registered: {session_id}")
        return store

    def remove_session(self, session_id: str) -> None:
        store = self._stores.pop(session_id, None)
        if store is not None:
            store.unlisten()
        if self._sessions.pop(session_id, None) is not None:
            logger.info(f"Session removed: {session_id}")

    def get_session(self, session_id: str) -> Optional[SessionHandle]:
        return self._sessions.get(session_id)

    def list_sessions(self) -> List[str]:
        return list(self._sessions)

    # =========================================================================
    # Recipient validation
    # =========================================================================

    @staticmethod
    def format_jid(jid: str, type: str = "number") -> str:
        """Turn a bare phone number or group id into a jid."""
        if "@" in jid:
            return jid
        if type == "group":
            return f"{jid}@g.us"
        return f"{jid.lstrip('+')}@s.whatsapp.net"

    async def valid_jid(self, session: SessionHandle, jid: str, type: str = "number") -> Optional[str]:
        """
        Resolve a recipient to the jid the server knows it by.

        Returns:
            The canonical jid, or None if it is not on WhatsApp
        """
        formatted = self.format_jid(jid, type)
        if type == "group":
            metadata = await session.group_metadata(formatted)
            return metadata.get("id") if metadata else None

        results = await session.on_whatsapp(formatted)
        if not results or not results[0].get("exists"):
            return None
        return results[0].get("jid") or formatted

    async def jid_exists(self, session: SessionHandle, jid: str, type: str = "number") -> bool:
        return await self.valid_jid(session, jid, type) is not None

    # =========================================================================
    # Session actions
    # =========================================================================

    async def update_presence(self, session: SessionHandle, presence: str, jid: str) -> None:
        await session.send_presence_update(presence, jid)

    async def download_media(self, session: SessionHandle, message: Dict[str, Any]) -> bytes:
        """Download a media message, asking the sender to re-upload expired media."""
        return await session.download_media_message(
            message, reupload_request=session.update_media_message
        )


# Process-wide registry used by the application
whatsapp_service = WhatsappService()
