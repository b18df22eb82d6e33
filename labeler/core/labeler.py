"""
Labeler Service - the write path.

Every label goes through the same steps, in this order:

1. Sign (unless the label arrived pre-signed)
2. Append (the store assigns the id)
3. Publish to live subscribers

Steps 2 and 3 run under one lock per service so frames leave the
server in id order. A label is never published before it has a
durably assigned id.

Fan-out is synchronous under that lock: publish awaits each
subscriber's send in turn, so a subscriber whose socket stalls holds
up every writer and every other subscriber until the send returns or
fails.

Labels are never edited. Retracting a label appends a new row with
neg=True; the original row is untouched.
"""

import asyncio
import time
from typing import TYPE_CHECKING, Annotated, Any, Iterable, Optional

from pydantic import Field, TypeAdapter, ValidationError

from ..errors import InvalidRequest
from ..observability import get_logger, get_metrics
from ..schemas import (
    MOD_EVENT_LABEL,
    Label,
    ModEventLabel,
    ModEventView,
    SignedLabel,
    Subject,
    expiry_after,
    now_timestamp,
)
from .bridge import SigningBridge
from .frames import MessageFrame
from .hub import LABELS_TOPIC, SubscriptionHub
from .signer import Signer

if TYPE_CHECKING:
    from ..db.store import LabelStore

logger = get_logger(__name__)

_subject_adapter = TypeAdapter(Annotated[Subject, Field(discriminator="type")])


class LabelerService:
    """
    Creates labels on behalf of one labeler identity.

    Owns the SigningBridge and publishes through the server's hub.
    """

    def __init__(
        self,
        did: str,
        store: "LabelStore",
        signer: Signer,
        hub: SubscriptionHub,
    ):
        """
        Args:
            did: The labeler's DID (src of every label it creates)
            store: Label log
            signer: Signing capability
            hub: Live subscriber registry
        """
        self.did = did
        self._store = store
        self._hub = hub
        self._bridge = SigningBridge(store, signer)
        self._emit_lock = asyncio.Lock()

    @property
    def store(self) -> "LabelStore":
        return self._store

    @property
    def bridge(self) -> SigningBridge:
        return self._bridge

    @property
    def hub(self) -> SubscriptionHub:
        return self._hub

    # ================================================================
    # LABEL CREATION
    # ================================================================

    async def create_label(self, label: Label) -> Label:
        """
        Sign, store and publish one label.

        A label that already carries a signature is stored unchanged.

        Returns:
            The stored label (id and sig set)

        Raises:
            WriteFailure: If the append did not complete
            SigningFailure: If the label could not be signed
        """
        async with self._emit_lock:
            if label.sig is None:
                signed = await self._bridge.sign(label)
                label = label.model_copy(update={"sig": signed.sig})

            start = time.perf_counter()
            stored = await self._store.append(label)
            get_metrics().record_append((time.perf_counter() - start) * 1000)

            signed = await self._bridge.ensure_signed(stored)
            await self._hub.publish(LABELS_TOPIC, MessageFrame.for_label(stored.id, signed))

        logger.info(
            "Label created",
            seq=stored.id,
            uri=stored.uri,
            val=stored.val,
            neg=stored.neg,
        )
        return stored

    async def create_labels(
        self,
        uri: str,
        cid: Optional[str] = None,
        create: Iterable[str] = (),
        negate: Iterable[str] = (),
        duration_in_hours: Optional[int] = None,
    ) -> list[Label]:
        """
        Create and negate label values on one subject.

        All creates are written first, then all negations. Created
        labels expire `duration_in_hours` after creation when given.
        """
        cts = now_timestamp()
        try:
            exp = expiry_after(cts, duration_in_hours) if duration_in_hours else None
        except OverflowError:
            raise InvalidRequest("durationInHours is out of range")

        created = []
        for val in create:
            created.append(await self.create_label(
                Label(src=self.did, uri=uri, cid=cid, val=val, cts=cts, exp=exp)
            ))
        for val in negate:
            created.append(await self.create_label(
                Label(src=self.did, uri=uri, cid=cid, val=val, neg=True, cts=cts)
            ))
        return created

    # ================================================================
    # MODERATION EVENTS
    # ================================================================

    async def emit_event(self, body: Any, actor: str) -> dict[str, Any]:
        """
        Apply a tools.ozone.moderation.emitEvent request body.

        Args:
            body: Decoded JSON body
            actor: Verified caller DID

        Returns:
            The ModEventView response (JSON-ready, camelCase keys)

        Raises:
            InvalidRequest: If the event or subject is malformed
        """
        if not isinstance(body, dict):
            raise InvalidRequest("Missing required field(s)")
        raw_event = body.get("event")
        raw_subject = body.get("subject")
        created_by = body.get("createdBy")
        if not raw_event or not raw_subject or not created_by:
            raise InvalidRequest("Missing required field(s)")
        if not isinstance(raw_event, dict) or raw_event.get("$type") != MOD_EVENT_LABEL:
            raise InvalidRequest("Unsupported event type")

        try:
            event = ModEventLabel.model_validate(raw_event)
        except ValidationError as e:
            raise InvalidRequest(f"Invalid label event: {e.errors()[0]['msg']}")
        try:
            subject = _subject_adapter.validate_python(raw_subject)
        except ValidationError:
            raise InvalidRequest("Invalid subject")

        if not event.create_label_vals and not event.negate_label_vals:
            raise InvalidRequest("At least one label value must be created or negated")

        labels = await self.create_labels(
            subject.uri,
            subject.cid,
            create=event.create_label_vals,
            negate=event.negate_label_vals,
            duration_in_hours=event.duration_in_hours,
        )
        logger.info(
            "Moderation event applied",
            actor=actor,
            uri=subject.uri,
            create_count=len(event.create_label_vals),
            negate_count=len(event.negate_label_vals),
        )

        view = ModEventView(
            id=labels[-1].id,
            event=raw_event,
            subject=raw_subject,
            createdBy=str(created_by),
            createdAt=now_timestamp(),
            labels=[_signed(label).to_json() for label in labels],
        )
        return view.model_dump(by_alias=True)


def _signed(label: Label) -> SignedLabel:
    return label.signed(label.sig)
