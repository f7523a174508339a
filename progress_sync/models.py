from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

class _LocatorPart(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True, alias_generator=to_camel)

class LocatorLocations(_LocatorPart):
    fragments: Optional[List[str]] = None
    progression: Optional[float] = None
    position: Optional[int] = None
    total_progression: Optional[float] = None
    css_selector: Optional[str] = None
    partial_cfi: Optional[str] = None

class LocatorText(_LocatorPart):
    before: Optional[str] = None
    after: Optional[str] = None
    highlight: Optional[str] = None

class Locator(_LocatorPart):
    """Where in a book a reader is. Immutable once constructed."""
    href: str
    type: str = "application/xhtml+xml"
    title: Optional[str] = None
    locations: Optional[LocatorLocations] = None
    text: Optional[LocatorText] = None

    @property
    def fragments(self) -> Optional[List[str]]:
        return self.locations.fragments if self.locations else None

    @property
    def progress_fraction(self) -> float:
        raw = 0.0
        if self.locations:
            if self.locations.total_progression is not None:
                raw = self.locations.total_progression
            elif self.locations.progression is not None:
                raw = self.locations.progression
        return min(max(raw, 0.0), 1.0)

    def same_position(self, other: Optional["Locator"]) -> bool:
        """Equality used for dedupe: same resource and same anchors."""
        if other is None:
            return False
        return self.href == other.href and self.fragments == other.fragments

    def summary(self) -> str:
        parts = [self.href]
        if self.fragments:
            parts.append("#" + ",".join(self.fragments))
        parts.append(f"@{self.progress_fraction:.4f}")
        return " ".join(parts)

    def describe(self) -> str:
        return f"{self.title or self.href}, {round(self.progress_fraction * 100)}%"

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

class SyncReason(str, Enum):
    USER_FLIPPED_PAGE = "userFlippedPage"
    USER_SELECTED_CHAPTER = "userSelectedChapter"
    USER_DRAGGED_SEEK_BAR = "userDraggedSeekBar"
    USER_PAUSED_PLAYBACK = "userPausedPlayback"
    USER_STARTED_PLAYBACK = "userStartedPlayback"
    USER_SKIPPED_FORWARD = "userSkippedForward"
    USER_SKIPPED_BACKWARD = "userSkippedBackward"
    PERIODIC_DURING_ACTIVE_PLAYBACK = "periodicDuringActivePlayback"
    PERIODIC_WHILE_READING = "periodicWhileReading"
    USER_CLOSED_BOOK = "userClosedBook"
    USER_RESTORED_FROM_HISTORY = "userRestoredFromHistory"
    APP_BACKGROUNDING = "appBackgrounding"
    APP_TERMINATING = "appTerminating"
    CONNECTION_RESTORED = "connectionRestored"
    WATCH_RECONNECTED = "watchReconnected"
    INITIAL_LOAD = "initialLoad"
    APP_WOKE_FROM_SLEEP = "appWokeFromSleep"

class SyncResult(str, Enum):
    SUCCESS = "success"
    QUEUED = "queued"
    FAILED = "failed"

class SendResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    NO_CONNECTION = "noConnection"

class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"

class ConnectionStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    state: ConnectionState = ConnectionState.DISCONNECTED
    message: Optional[str] = None

    @property
    def is_connected(self) -> bool:
        return self.state == ConnectionState.CONNECTED

    @classmethod
    def error(cls, message: str) -> "ConnectionStatus":
        return cls(state=ConnectionState.ERROR, message=message)

class PositionSource(str, Enum):
    SERVER = "server"
    PENDING_SYNC = "pendingSync"
    LOCAL_ONLY = "localOnly"

class PendingSyncEntry(BaseModel):
    book_id: str
    locator: Locator
    timestamp: int  # client clock, ms since epoch
    queued_at: int = 0
    attempt_count: int = 0
    synced_to_primary: bool = False
    synced_to_secondary: bool = False
    last_error: Optional[str] = None

    def is_fully_synced(self, secondary_enabled: bool) -> bool:
        return self.synced_to_primary and (self.synced_to_secondary or not secondary_enabled)

class KnownPosition(BaseModel):
    book_id: str
    locator: Locator
    timestamp: int
    source: PositionSource

    @property
    def progress_fraction(self) -> float:
        return self.locator.progress_fraction

class RemoteProgress(BaseModel):
    book_id: str
    locator: Locator
    timestamp: int
    device_id: Optional[str] = None

class SyncHistoryResult(str, Enum):
    PERSISTED = "persisted"
    SENT_TO_SERVER = "sentToServer"
    SERVER_CONFIRMED = "serverConfirmed"
    FAILED = "failed"
    SERVER_INCOMING_ACCEPTED = "serverIncomingAccepted"
    SERVER_INCOMING_REJECTED = "serverIncomingRejected"

class SyncHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: int
    arrived_at: int
    source_identifier: str
    location_description: str
    reason: SyncReason
    result: SyncHistoryResult
    locator_summary: str
    locator: Optional[Locator] = None

    @property
    def human_timestamp(self) -> str:
        return datetime.fromtimestamp(self.timestamp / 1000).strftime("%Y-%m-%d %H:%M:%S")

class SyncHistoryFile(BaseModel):
    books: Dict[str, List[SyncHistoryEntry]] = Field(default_factory=dict)
