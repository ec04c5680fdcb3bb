"""
Geofeed Kernel API — FastAPI endpoints.

Exposes the engine to a host application via a REST API for:
- Writing proximity-indexed documents and querying what is nearby
- Driving and collecting a user's roaming entity
- Pairwise turn-locked conversations
- Capped zone feeds and deep zone deletion
- Physical sweeping of expired documents
"""

import random
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, FastAPI, HTTPException, Query
from pydantic import BaseModel, Field

from geofeed_kernel.channel.turn_lock import (
    CONVERSATIONS,
    ChannelNotReady,
    InvalidMessage,
    NotMessageAuthor,
    NotYourTurn,
    SendError,
    TurnLockedChannel,
    derive_turn_state,
    ensure_conversation,
    is_unread,
)
from geofeed_kernel.config import Settings, get_settings
from geofeed_kernel.feed.cleanup import ZONES, ExpiredDocumentSweeper, delete_zone_fully, posts_path
from geofeed_kernel.feed.evictor import RollingFeedEvictor
from geofeed_kernel.geo.documents import build_indexed_document
from geofeed_kernel.logging import setup_logging
from geofeed_kernel.models.conversation import Conversation
from geofeed_kernel.models.feed import FeedItem
from geofeed_kernel.models.geo import GeoPoint, IndexedDocument, Zone
from geofeed_kernel.models.proximity import ProximityQuery
from geofeed_kernel.proximity.merger import LiveQueryMerger
from geofeed_kernel.roaming.persistence import SqliteStatePort
from geofeed_kernel.roaming.simulator import (
    CollectError,
    NothingToCollect,
    OutOfRange,
    RoamingSimulator,
)
from geofeed_kernel.store.base import DocumentStore
from geofeed_kernel.store.exceptions import StoreError
from geofeed_kernel.store.memory import InMemoryDocumentStore
from geofeed_kernel.utils.time import Clock, now_utc


# --- Request/Response Models ---

class DocumentCreateRequest(BaseModel):
    position: GeoPoint
    payload: Dict[str, Any] = {}
    lifetime_seconds: Optional[float] = Field(default=None, gt=0)


class PositionRequest(BaseModel):
    position: Optional[GeoPoint] = None


class ConversationCreateRequest(BaseModel):
    uid_a: str
    uid_b: str
    chat_id: Optional[str] = None


class MessageCreateRequest(BaseModel):
    sender_id: str
    sender_name: Optional[str] = None
    text: str


class PostCreateRequest(BaseModel):
    text: str
    author_id: str
    author_name: Optional[str] = None
    cap: Optional[int] = Field(default=None, ge=1)


# --- Application Factory ---

@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    app.state.roaming_state.close()


def create_app(
    store: Optional[DocumentStore] = None,
    settings: Optional[Settings] = None,
    clock: Optional[Clock] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""

    app = FastAPI(
        title="Geofeed Kernel API",
        description="Proximity-indexed ephemeral world-state engine",
        version="0.1.0-alpha",
        lifespan=lifespan,
    )

    # Initialize components
    cfg = settings or get_settings()
    setup_logging(cfg.LOG_LEVEL)
    clock = clock or now_utc
    ds = store or InMemoryDocumentStore(clock=clock)
    evictor = RollingFeedEvictor(ds)
    simulators: Dict[str, RoamingSimulator] = {}
    sweepers: Dict[str, ExpiredDocumentSweeper] = {}
    roaming_state = SqliteStatePort(cfg.ROAMING_STATE_PATH, key=cfg.ROAMING_STATE_KEY)

    # Store components on app state for access in endpoints
    app.state.settings = cfg
    app.state.store = ds
    app.state.evictor = evictor
    app.state.simulators = simulators
    app.state.sweepers = sweepers
    app.state.roaming_state = roaming_state

    query_radius = {
        "chats": cfg.ZONE_QUERY_RADIUS_M,
        "moods": cfg.MOOD_QUERY_RADIUS_M,
        "shouts": cfg.shout_query_radius_m,
    }
    lifetimes = {
        "chats": cfg.ZONE_LIFETIME_SECONDS,
        "moods": cfg.MOOD_LIFETIME_SECONDS,
        "shouts": cfg.SHOUT_LIFETIME_SECONDS,
    }
    # Zones and shouts also expire on read from created_at; moods only by expires_at.
    read_lifetimes = {
        "chats": cfg.ZONE_LIFETIME_SECONDS,
        "shouts": cfg.SHOUT_LIFETIME_SECONDS,
    }

    def nearby(collection: str, center: GeoPoint, radius_m: float) -> List[IndexedDocument]:
        merger = LiveQueryMerger(
            ds,
            ProximityQuery(
                collection=collection,
                center=center,
                radius_m=radius_m,
                ttl_field="expires_at",
                lifetime_seconds=read_lifetimes.get(collection),
            ),
            clock=clock,
        )
        merger.start()
        try:
            return merger.results
        finally:
            merger.stop()

    def zones_near(position: Optional[GeoPoint]) -> List[Zone]:
        if position is None:
            return []
        return [
            Zone.from_document(doc)
            for doc in nearby(ZONES, position, cfg.ZONE_QUERY_RADIUS_M)
        ]

    def get_simulator(uid: str) -> RoamingSimulator:
        if uid not in simulators:
            sim = RoamingSimulator(
                ds,
                state_port=roaming_state.for_key(f"{cfg.ROAMING_STATE_KEY}:{uid}"),
                rng=random.Random(cfg.ROAMING_SEED),
                clock=clock,
            )
            sim.restore()
            simulators[uid] = sim
        return simulators[uid]

    def roaming_view(uid: str, sim: RoamingSimulator, position: Optional[GeoPoint] = None) -> dict:
        entity = sim.active_entity
        return {
            "uid": uid,
            "entity": entity.model_dump(mode="json") if entity else None,
            "collectible": sim.collectible(position) is not None,
            "next_spawn_at": sim.next_spawn_at.isoformat() if sim.next_spawn_at else None,
        }

    async def load_conversation(conversation_id: str) -> Conversation:
        snap = await ds.get(CONVERSATIONS, conversation_id)
        if snap is None:
            raise HTTPException(404, "Conversation not found")
        return Conversation.model_validate(snap.to_dict())

    # === PROXIMITY DOCUMENTS ===

    @app.post("/documents/{collection}")
    async def create_document(collection: str, req: DocumentCreateRequest):
        """Write a proximity-indexed document."""
        lifetime = req.lifetime_seconds or lifetimes.get(collection)
        body = build_indexed_document(req.position, req.payload, lifetime, now=clock())
        try:
            doc_id = await ds.add(collection, body)
        except StoreError as e:
            raise HTTPException(502, str(e))
        return {"id": doc_id, "geohash": body["geohash"]}

    @app.get("/nearby/{collection}")
    async def get_nearby(
        collection: str,
        lat: float = Query(..., ge=-90, le=90),
        lng: float = Query(..., ge=-180, le=180),
        radius_m: Optional[float] = Query(None, gt=0),
    ):
        """Documents within the radius, newest first, expired ones hidden."""
        radius = radius_m or query_radius.get(collection, cfg.ZONE_QUERY_RADIUS_M)
        docs = nearby(collection, GeoPoint(lat=lat, lng=lng), radius)
        return [d.model_dump(mode="json") for d in docs]

    # === ROAMING ENTITIES ===

    @app.post("/roaming/{uid}/tick")
    async def tick_roaming(uid: str, req: PositionRequest):
        """Run one spawn tick and one movement tick for a user."""
        sim = get_simulator(uid)
        zones = zones_near(req.position)
        sim.spawn_tick(req.position, zones)
        sim.move_tick(req.position, zones)
        return roaming_view(uid, sim, req.position)

    @app.get("/roaming/{uid}")
    async def get_roaming(uid: str):
        """Current roaming entity for a user."""
        return roaming_view(uid, get_simulator(uid))

    @app.post("/roaming/{uid}/collect")
    async def collect_roaming(uid: str, req: PositionRequest):
        """Collect the user's roaming entity into their inventory."""
        sim = get_simulator(uid)
        try:
            entity = await sim.collect(uid, req.position)
        except NothingToCollect as e:
            raise HTTPException(404, str(e))
        except OutOfRange as e:
            raise HTTPException(409, str(e))
        except CollectError as e:
            raise HTTPException(502, str(e))
        return {"collected": entity.model_dump(mode="json"), "uid": uid}

    # === CONVERSATIONS ===

    @app.post("/conversations")
    async def create_conversation(req: ConversationCreateRequest):
        """Open (or reopen) the conversation between two users."""
        try:
            conversation_id = await ensure_conversation(ds, req.uid_a, req.uid_b)
            if req.chat_id:
                await ds.update(CONVERSATIONS, conversation_id, {"chat_id": req.chat_id})
        except ValueError as e:
            raise HTTPException(422, str(e))
        except StoreError as e:
            raise HTTPException(502, str(e))
        return {"id": conversation_id}

    @app.get("/conversations/{conversation_id}")
    async def get_conversation(conversation_id: str, uid: Optional[str] = None):
        """Conversation metadata, recent messages and, for a participant, their turn."""
        conversation = await load_conversation(conversation_id)
        if uid is not None and uid not in conversation.participants:
            raise HTTPException(403, "Not a participant")

        result: Dict[str, Any] = {"conversation": conversation.model_dump(mode="json")}
        if uid is not None:
            result["unread"] = is_unread(conversation, uid)

        # Viewing as a participant also records the read receipt.
        channel = TurnLockedChannel(
            ds,
            conversation_id,
            uid or "",
            history_limit=cfg.MESSAGE_HISTORY_LIMIT,
            read_receipts=uid is not None,
        )
        channel.open()
        channel.close()
        await channel.settle()
        if uid is not None:
            result["turn"] = derive_turn_state(channel.messages, uid).value
        result["messages"] = [m.model_dump(mode="json") for m in channel.messages]
        return result

    @app.post("/conversations/{conversation_id}/messages")
    async def send_message(conversation_id: str, req: MessageCreateRequest):
        """Send a message if it is the sender's turn."""
        conversation = await load_conversation(conversation_id)
        if req.sender_id not in conversation.participants:
            raise HTTPException(403, "Not a participant")

        channel = TurnLockedChannel(
            ds,
            conversation_id,
            req.sender_id,
            local_name=req.sender_name,
            history_limit=cfg.MESSAGE_HISTORY_LIMIT,
            max_message_length=cfg.MAX_MESSAGE_LENGTH,
        )
        channel.open()
        try:
            message_id = await channel.send(req.text)
            turn = channel.state
        except ChannelNotReady as e:
            raise HTTPException(503, str(e))
        except NotYourTurn as e:
            raise HTTPException(409, str(e))
        except InvalidMessage as e:
            raise HTTPException(422, str(e))
        except SendError as e:
            raise HTTPException(502, str(e))
        finally:
            channel.close()
            await channel.settle()
        return {"id": message_id, "turn": turn.value}

    @app.delete("/conversations/{conversation_id}/messages/{message_id}")
    async def delete_message(conversation_id: str, message_id: str, uid: str):
        """Delete one of the caller's own messages."""
        await load_conversation(conversation_id)
        channel = TurnLockedChannel(ds, conversation_id, uid)
        try:
            await channel.delete_message(message_id)
        except NotMessageAuthor as e:
            raise HTTPException(403, str(e))
        return {"status": "deleted", "id": message_id}

    # === FEEDS ===

    @app.post("/feeds/{zone_id}/posts")
    async def create_post(zone_id: str, req: PostCreateRequest, background_tasks: BackgroundTasks):
        """Admit a post to a zone feed; the oldest post is evicted once the cap is hit."""
        data = req.model_dump(exclude={"cap"})
        try:
            post_id = await evictor.admit(posts_path(zone_id), data, req.cap or cfg.FEED_CAP)
        except StoreError as e:
            raise HTTPException(502, str(e))
        background_tasks.add_task(evictor.drain)
        return {"id": post_id}

    @app.get("/feeds/{zone_id}/posts")
    async def list_posts(zone_id: str, limit: int = Query(50, ge=1)):
        """Zone feed, newest first."""
        docs = await ds.list_documents(
            posts_path(zone_id), order_by="created_at", descending=True, limit=limit
        )
        items = [FeedItem.model_validate({**d.to_dict(), "feed_id": zone_id}) for d in docs]
        return [item.model_dump(mode="json") for item in items]

    @app.delete("/zones/{zone_id}")
    async def delete_zone(zone_id: str):
        """Delete a zone with its posts, comments, presence and conversations."""
        if await ds.get(ZONES, zone_id) is None:
            raise HTTPException(404, "Zone not found")
        try:
            await delete_zone_fully(ds, zone_id)
        except StoreError as e:
            raise HTTPException(502, str(e))
        return {"status": "deleted", "zone_id": zone_id}

    # === MAINTENANCE ===

    @app.post("/sweep/{collection}")
    async def sweep_collection(collection: str):
        """Physically delete expired documents of a collection."""
        if collection not in sweepers:
            sweepers[collection] = ExpiredDocumentSweeper(
                ds,
                collection,
                schedule=cfg.SWEEP_SCHEDULE,
                ttl_field="expires_at",
                clock=clock,
            )
        sweeper = sweepers[collection]
        try:
            deleted = await sweeper.sweep()
        except StoreError as e:
            raise HTTPException(502, str(e))
        return {
            "collection": collection,
            "deleted": deleted,
            "next_run_at": sweeper.next_run_at().isoformat(),
        }

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "roaming_users": len(simulators),
            "pending_evictions": evictor.pending,
        }

    return app


# Default application instance
app = create_app()
