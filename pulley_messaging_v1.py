"""
Pulley Protocol - Remote Messaging Channel
Version: 1.0.0

Opaque send/receive channel between the allocator and remote venues.
Payloads are (message_type, data) pairs. Delivery is at-least-once and
unordered across requests; nothing here guarantees a deadline.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pulley_enforcement_v1 import (
    InvalidMessageType,
    logger
)

class MessageType(Enum):
    DEPOSIT_TO_VAULT = 1
    LIMIT_ORDER = 2
    CHECK_PROFIT = 3

@dataclass(frozen=True)
class CrossChainPayload:
    message_type: MessageType
    data: Dict[str, Any]

    def encode(self) -> tuple:
        return (self.message_type.value, dict(self.data))

    @classmethod
    def decode(cls, raw) -> "CrossChainPayload":
        """Accept a payload object or a (message_type, data) tuple."""
        if isinstance(raw, CrossChainPayload):
            return raw
        try:
            type_value, data = raw
            message_type = MessageType(type_value)
        except (TypeError, ValueError) as e:
            raise InvalidMessageType(f"Undecodable payload {raw!r}") from e
        if not isinstance(data, dict):
            raise InvalidMessageType(f"Payload data must be a mapping, got {type(data).__name__}")
        return cls(message_type=message_type, data=dict(data))

@dataclass
class OutboundMessage:
    destination: str
    payload: CrossChainPayload
    sent_at: datetime = field(default_factory=datetime.now)

    @property
    def request_id(self) -> Optional[str]:
        return self.payload.data.get('request_id')

def response_payload(message_type: MessageType, request_id: str, success: bool, pnl: int = 0) -> CrossChainPayload:
    """Build the payload a remote venue sends back for a request."""
    return CrossChainPayload(
        message_type=message_type,
        data={'request_id': request_id, 'success': success, 'pnl': pnl}
    )

# Inbound handler signature: handler(caller, origin, payload)
InboundHandler = Callable[[str, str, CrossChainPayload], Any]

class InMemoryRelay:
    """
    Loopback relay: records outbound messages and delivers responses to the
    registered handler. deliver() may be called any number of times for the
    same response, which is how duplicate delivery is reproduced.
    """

    def __init__(self, identity: str = "pulley-relayer"):
        self.identity = identity
        self.outbox: List[OutboundMessage] = []
        self.delivered: List[Dict[str, Any]] = []
        self.handler: Optional[InboundHandler] = None

    def connect(self, handler: InboundHandler):
        self.handler = handler

    def send(self, destination: str, payload: CrossChainPayload) -> OutboundMessage:
        message = OutboundMessage(destination=destination, payload=payload)
        self.outbox.append(message)
        logger.info(f"[RELAY] → {destination}: {payload.message_type.name} {str(payload.data.get('request_id', ''))[:12]}")
        return message

    def deliver(self, origin: str, payload) -> Any:
        if self.handler is None:
            raise RuntimeError("Relay has no inbound handler connected")
        payload = CrossChainPayload.decode(payload)
        self.delivered.append({'origin': origin, 'payload': payload, 'delivered_at': datetime.now()})
        logger.info(f"[RELAY] ← {origin}: {payload.message_type.name} {str(payload.data.get('request_id', ''))[:12]}")
        return self.handler(self.identity, origin, payload)

    def pending_outbound(self, destination: Optional[str] = None) -> List[OutboundMessage]:
        if destination is None:
            return list(self.outbox)
        return [m for m in self.outbox if m.destination == destination]
