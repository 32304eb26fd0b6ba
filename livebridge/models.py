"""Data models for livebridge.

Everything that crosses a component boundary is a pydantic model:
- transcript entries and video artifacts (the reconciled consumer view)
- tagged surface elements making up a RawSnapshot (the extraction output,
  validated here before the merge engine ever sees it)
- commands arriving on a channel
- the per-session merge state
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, field_validator, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, Enum):
    USER = "user"
    AGENT = "agent"


class StepStatus(str, Enum):
    COMPLETED = "completed"
    CURRENT = "current"
    PENDING = "pending"


class Recoverability(str, Enum):
    """How a caller should react to an error."""
    RECOVERABLE = "recoverable"          # retry the same request
    ESCALATABLE = "escalatable"          # recreate the session, then retry
    NON_RECOVERABLE = "non_recoverable"  # report and stop


_WS_RE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Collapse whitespace so re-rendered text compares equal."""
    if not text:
        return ""
    return _WS_RE.sub(" ", text).strip()


def strip_query(ref: str | None) -> str:
    """Drop query string and fragment from a media reference."""
    if not ref:
        return ""
    return ref.split("#", 1)[0].split("?", 1)[0]


# ---------------------------------------------------------------------------
# Transcript
# ---------------------------------------------------------------------------

class ImageRef(BaseModel):
    url: str
    alt: str = ""


class VideoArtifact(BaseModel):
    """A video produced by the remote agent.

    Pending while only a placeholder card has been observed; resolved once a
    playable reference was read from the surface.
    """
    thumbnail: str = ""
    poster: str = ""
    title: str = ""
    video_url: str | None = Field(default=None, alias="videoUrl")
    fingerprint: str | None = None

    model_config = {"populate_by_name": True}

    @property
    def resolved(self) -> bool:
        return bool(self.video_url)

    def poster_keys(self) -> set[str]:
        return {strip_query(ref) for ref in (self.poster, self.thumbnail) if ref}


class TranscriptEntry(BaseModel):
    role: Role
    text: str = ""
    images: list[ImageRef] = Field(default_factory=list)
    video: VideoArtifact | None = None

    def image_urls(self) -> tuple[str, ...]:
        return tuple(sorted({img.url for img in self.images}))

    def merge_key(self) -> str:
        """Identity used to recognise a text entry across samples."""
        return "\x1f".join((self.role.value, normalize_text(self.text), ",".join(self.image_urls())))

    def to_wire(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", by_alias=True, exclude_none=True)
        if not data.get("images"):
            data.pop("images", None)
        if not data.get("text"):
            data.pop("text", None)
        return data


# ---------------------------------------------------------------------------
# Generation progress
# ---------------------------------------------------------------------------

class ProgressStep(BaseModel):
    text: str
    status: StepStatus = StepStatus.PENDING


class GenerationProgress(BaseModel):
    """Point-in-time read of the remote progress widget. Never accumulated."""
    is_active: bool = Field(default=False, alias="isGenerating")
    percentage: int | None = None
    current_status: str = Field(default="", alias="currentStatus")
    current_step: str = Field(default="", alias="currentStep")
    message: str = ""
    steps: list[ProgressStep] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @field_validator("percentage", mode="before")
    @classmethod
    def _parse_percentage(cls, value: Any) -> Any:
        if isinstance(value, str):
            m = re.search(r"\d+", value)
            return int(m.group(0)) if m else None
        return value

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Raw snapshot (tagged surface elements)
# ---------------------------------------------------------------------------

class UserTurn(BaseModel):
    kind: Literal["user_turn"] = "user_turn"
    text: str = ""
    images: list[ImageRef] = Field(default_factory=list)

    @model_validator(mode="after")
    def _not_empty(self) -> UserTurn:
        if not self.text.strip() and not self.images:
            raise ValueError("user turn carries neither text nor images")
        return self

    @property
    def image_only(self) -> bool:
        return not self.text.strip() and bool(self.images)


class AgentText(BaseModel):
    kind: Literal["agent_text"] = "agent_text"
    text: str = Field(min_length=1)
    streaming: bool = False


class VideoPlaceholder(BaseModel):
    kind: Literal["video_placeholder"] = "video_placeholder"
    thumbnail: str = ""
    title: str = ""
    subtitle: str = ""

    @model_validator(mode="after")
    def _identifiable(self) -> VideoPlaceholder:
        if not self.thumbnail and not self.title:
            raise ValueError("placeholder has neither thumbnail nor title")
        return self


class VideoResolved(BaseModel):
    kind: Literal["video_resolved"] = "video_resolved"
    video_url: str = Field(alias="videoUrl", min_length=1)
    poster: str = ""
    thumbnail: str = ""
    title: str = ""
    subtitle: str = ""

    model_config = {"populate_by_name": True}


class ProgressWidget(BaseModel):
    kind: Literal["generation_progress"] = "generation_progress"
    progress: GenerationProgress


SurfaceElement = Annotated[
    Union[UserTurn, AgentText, VideoPlaceholder, VideoResolved, ProgressWidget],
    Field(discriminator="kind"),
]


class RawSnapshot(BaseModel):
    """Ordered, classified elements observed on the remote surface."""
    elements: list[SurfaceElement] = Field(default_factory=list)
    url: str = ""
    error_banner: str | None = None

    @property
    def progress(self) -> GenerationProgress | None:
        for element in reversed(self.elements):
            if isinstance(element, ProgressWidget):
                return element.progress
        return None

    @property
    def streaming(self) -> bool:
        """True while an agent reply is still being typed."""
        return any(isinstance(e, AgentText) and e.streaming for e in self.elements)


# ---------------------------------------------------------------------------
# Merge state
# ---------------------------------------------------------------------------

class TranscriptState(BaseModel):
    """Reconciled transcript for one session."""
    entries: list[TranscriptEntry] = Field(default_factory=list)
    fingerprints: set[str] = Field(default_factory=set)
    # keys of entries pushed out of the window, oldest first
    evicted: list[str] = Field(default_factory=list)
    progress: GenerationProgress | None = None

    def to_wire(self) -> list[dict[str, Any]]:
        return [entry.to_wire() for entry in self.entries]


class MergeResult(BaseModel):
    state: TranscriptState
    delta: list[TranscriptEntry] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

class Command(BaseModel):
    action: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    request_id: str | int | None = None
    arrival_order: int = 0

    @classmethod
    def from_wire(cls, data: dict[str, Any], arrival_order: int = 0) -> Command:
        """Build a command from a flat wire message: {"action": ..., "id": ..., **payload}."""
        body = dict(data)
        action = body.pop("action", "")
        request_id = body.pop("id", None)
        if request_id is None:
            request_id = body.pop("requestId", None)
        payload = body.pop("payload", None)
        if not isinstance(payload, dict):
            payload = body
        return cls(action=action, payload=payload, request_id=request_id, arrival_order=arrival_order)


# ---------------------------------------------------------------------------
# Surface selectors
# ---------------------------------------------------------------------------

class SurfaceSelectors(BaseModel):
    """CSS selectors describing the remote surface.

    Defaults match the current target; override with LIVEBRIDGE_SELECTORS_FILE.
    """
    transcript_ready: str = ".tw-bg-fill-block, div.tw-flex.tw-justify-start"
    user_row: str = "div.tw-flex.tw-justify-end"
    agent_row: str = "div.tw-flex.tw-justify-start"
    user_bubble: str = ".tw-bg-fill-block"
    user_images: str = 'img[src*="heygen"]'
    agent_reply: list[str] = Field(default_factory=lambda: [
        "div.tw-prose",
        "div.tw-text-textTitle div.tw-prose",
        "div > div.tw-text-textTitle > div.tw-prose",
        "div > div.tw-bg-fill-block",
    ])
    reasoning: str = "div.tw-border-l-2.tw-border-line"
    streaming_marker: str = '[data-testid="typing-indicator"], .tw-animate-pulse, .tw-animate-bounce'
    video_card: str = (
        "div.tw-flex.tw-flex-col.tw-items-stretch.tw-rounded-2xl.tw-border.tw-border-line"
        ".tw-bg-fill-general.tw-cursor-pointer:not(.tw-hidden)"
    )
    completed_card: str = "div.tw-border-brand.tw-bg-more-brandLighter"
    card_thumbnail: str = 'img[alt="draft thumbnail"], img'
    card_title: str = ".tw-text-base.tw-font-bold.tw-tracking-tight"
    card_subtitle: str = ".tw-text-sm.tw-font-medium.tw-text-textBody span"
    card_open_icon: str = 'iconpark-icon[name="fill-the-canva"]'
    player_video: str = "video"
    close_button: str = 'button[aria-label="Close"]'
    progress_card: str = (
        "div.tw-flex.tw-flex-col.tw-items-stretch.tw-gap-4.tw-rounded-2xl.tw-border"
        ".tw-border-line.tw-bg-fill-general.tw-p-4.tw-relative"
    )
    progress_percent: str = "span.tw-font-semibold"
    progress_status: str = ".tw-text-base.tw-font-bold"
    progress_message: str = ".tw-text-sm.tw-text-textBody"
    progress_step: str = ".tw-flex.tw-items-center.tw-gap-3"
    step_completed_icon: str = 'iconpark-icon[name="check-one-fill"]'
    step_current_icon: str = 'iconpark-icon[name="onboarding-ongoing"]'
    error_banner: str = ".tw-bg-more-redLighter"
    prompt_input: str = "textarea.tw-resize-none"
    submit_button: str = 'button[data-loading="false"].tw-bg-brand:not([disabled])'
    file_input: str = 'input[type="file"]'
