"""
Reconciliation: fold successive snapshots into one stable transcript.

``merge(prior, snapshot)`` returns the new state plus the delta (entries that
are new or changed by this merge). Re-merging an unchanged snapshot yields
an empty delta.

Rules, in order:
  1. Streaming overwrite: agent text that is a strict prefix of the entry at
     the same position is a stale partial render and is dropped; text that
     strictly extends it replaces it in place.
  2. Placeholder/resolved matching: placeholders match pending entries by
     title, then thumbnail. Resolved videos fill a pending entry matched by
     poster, else the most recent pending entry; they are appended only
     when nothing is pending.
  3. Fingerprint dedup: a resolved reference whose content fingerprint was
     already accepted is dropped.
  4. Image-only coalescing: an image-only user turn directly followed by a
     user text turn becomes one turn; other image-only turns are deduped by
     their image set.

Snapshot elements are aligned to existing entries with a forward-moving
cursor, so repeated identical messages ("ok", "ok") stay distinct entries.
Entries pushed out of the window are remembered in order; only the head of a
later snapshot that lines up with them is skipped.
"""

from __future__ import annotations

from livebridge.config import Config
from livebridge.media import fingerprint_or_ref
from livebridge.models import (
    AgentText,
    ImageRef,
    MergeResult,
    ProgressWidget,
    RawSnapshot,
    Role,
    SurfaceElement,
    TranscriptEntry,
    TranscriptState,
    UserTurn,
    VideoArtifact,
    VideoPlaceholder,
    VideoResolved,
    normalize_text,
    strip_query,
)


# ---------------------------------------------------------------------------
# Rule 4: image-only user turns
# ---------------------------------------------------------------------------

def _dedupe_images(images: list[ImageRef]) -> list[ImageRef]:
    seen: set[str] = set()
    out: list[ImageRef] = []
    for img in images:
        if img.url not in seen:
            seen.add(img.url)
            out.append(img)
    return out


def coalesce_user_turns(elements: list[SurfaceElement]) -> list[SurfaceElement]:
    out: list[SurfaceElement] = []
    seen_image_sets: set[tuple[str, ...]] = set()
    i = 0
    while i < len(elements):
        element = elements[i]
        if isinstance(element, UserTurn) and element.image_only:
            following = elements[i + 1] if i + 1 < len(elements) else None
            if isinstance(following, UserTurn) and not following.image_only:
                out.append(UserTurn(
                    text=following.text,
                    images=_dedupe_images(element.images + following.images),
                ))
                i += 2
                continue
            image_set = tuple(sorted({img.url for img in element.images}))
            if image_set in seen_image_sets:
                i += 1
                continue
            seen_image_sets.add(image_set)
        out.append(element)
        i += 1
    return out


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _video_key(thumbnail: str, title: str) -> str:
    return "video\x1f" + (strip_query(thumbnail) or title)


def _evicted_key(entry: TranscriptEntry) -> str:
    if entry.video is not None:
        return _video_key(entry.video.thumbnail, entry.video.title)
    return entry.merge_key()


class _Merger:
    """One merge pass over a working copy of the entries."""

    def __init__(self, state: TranscriptState):
        self.entries = list(state.entries)
        self.fingerprints = set(state.fingerprints)
        self.cursor = 0
        self._claimed: set[int] = set()
        self._changed: set[int] = set()

    # -- bookkeeping --------------------------------------------------------

    def _claim(self, index: int) -> None:
        self._claimed.add(id(self.entries[index]))
        if index >= self.cursor:
            self.cursor = index + 1

    def _replace(self, index: int, entry: TranscriptEntry) -> None:
        self.entries[index] = entry
        self._changed.add(id(entry))
        self._claim(index)

    def _insert(self, index: int, entry: TranscriptEntry) -> None:
        self.entries.insert(index, entry)
        self._changed.add(id(entry))
        self._claim(index)

    def _free(self, index: int) -> bool:
        return id(self.entries[index]) not in self._claimed

    def delta(self) -> list[TranscriptEntry]:
        return [e for e in self.entries if id(e) in self._changed]

    # -- text ---------------------------------------------------------------

    def text(self, entry: TranscriptEntry) -> None:
        key = entry.merge_key()
        for index in range(self.cursor, len(self.entries)):
            current = self.entries[index]
            if current.video is None and self._free(index) and current.merge_key() == key:
                self._claim(index)
                return

        if entry.role is Role.AGENT and self.cursor < len(self.entries) and self._free(self.cursor):
            current = self.entries[self.cursor]
            if current.role is Role.AGENT and current.video is None:
                old, new = normalize_text(current.text), normalize_text(entry.text)
                if old and new and old != new:
                    if old.startswith(new):
                        # stale partial render of a longer text
                        self._claim(self.cursor)
                        return
                    if new.startswith(old):
                        self._replace(self.cursor, current.model_copy(update={"text": entry.text}))
                        return

        self._insert(self.cursor, entry)

    # -- video --------------------------------------------------------------

    def _pending(self) -> list[int]:
        return [
            i for i, e in enumerate(self.entries)
            if e.video is not None and not e.video.resolved and self._free(i)
        ]

    def placeholder(self, element: VideoPlaceholder) -> None:
        thumb = strip_query(element.thumbnail)
        for index, entry in enumerate(self.entries):
            video = entry.video
            if video is None or not video.resolved or not self._free(index):
                continue
            if (thumb and thumb in video.poster_keys()) or (not thumb and element.title == video.title):
                # already resolved; a placeholder never reverts it
                self._claim(index)
                return

        pending = self._pending()
        match = None
        if element.title:
            match = next((i for i in pending if self.entries[i].video.title == element.title), None)
        if match is None and thumb:
            match = next((i for i in pending if thumb in self.entries[i].video.poster_keys()), None)
        if match is not None:
            entry = self.entries[match]
            video = entry.video
            updated = video.model_copy(update={
                "thumbnail": element.thumbnail or video.thumbnail,
                "poster": video.poster or element.thumbnail,
                "title": element.title or video.title,
            })
            if updated != video or (element.subtitle and element.subtitle != entry.text):
                self._replace(match, entry.model_copy(update={
                    "video": updated,
                    "text": element.subtitle or entry.text,
                }))
            else:
                self._claim(match)
            return

        self._insert(self.cursor, TranscriptEntry(
            role=Role.AGENT,
            text=element.subtitle,
            video=VideoArtifact(
                thumbnail=element.thumbnail,
                poster=element.thumbnail,
                title=element.title or Config.DEFAULT_VIDEO_TITLE,
            ),
        ))

    def resolved(self, element: VideoResolved) -> None:
        fingerprint = fingerprint_or_ref(element.video_url)
        if fingerprint in self.fingerprints:
            for index, entry in enumerate(self.entries):
                if entry.video is not None and entry.video.fingerprint == fingerprint and self._free(index):
                    self._claim(index)
                    break
            return
        self.fingerprints.add(fingerprint)

        keys = {strip_query(ref) for ref in (element.poster, element.thumbnail) if ref}
        pending = self._pending()
        match = next((i for i in pending if keys & self.entries[i].video.poster_keys()), None)
        if match is None and pending:
            # best effort: most recent pending placeholder
            match = pending[-1]

        if match is not None:
            entry = self.entries[match]
            video = entry.video
            title = element.title
            if not title or (title == Config.DEFAULT_VIDEO_TITLE and video.title):
                title = video.title
            self._replace(match, entry.model_copy(update={
                "video": video.model_copy(update={
                    "video_url": element.video_url,
                    "fingerprint": fingerprint,
                    "poster": element.poster or video.poster,
                    "thumbnail": video.thumbnail or element.thumbnail,
                    "title": title,
                }),
                "text": entry.text or element.subtitle,
            }))
            return

        self._insert(len(self.entries), TranscriptEntry(
            role=Role.AGENT,
            text=element.subtitle,
            video=VideoArtifact(
                thumbnail=element.thumbnail,
                poster=element.poster or element.thumbnail,
                title=element.title or Config.DEFAULT_VIDEO_TITLE,
                video_url=element.video_url,
                fingerprint=fingerprint,
            ),
        ))


def _element_key(element: SurfaceElement) -> str | None:
    if isinstance(element, UserTurn):
        return TranscriptEntry(role=Role.USER, text=element.text, images=element.images).merge_key()
    if isinstance(element, AgentText):
        return TranscriptEntry(role=Role.AGENT, text=element.text).merge_key()
    if isinstance(element, VideoPlaceholder):
        return _video_key(element.thumbnail, element.title)
    # resolved videos are deduped by fingerprint instead
    return None


def _skip_evicted(elements: list[SurfaceElement], evicted: list[str]) -> list[SurfaceElement]:
    """Drop the leading elements that line up, in order, with evicted entries.

    Only the head of the snapshot is skipped: the first element that does not
    follow the evicted sequence ends the skip, so a later turn repeating an
    evicted one is still merged.
    """
    if not evicted:
        return elements
    out: list[SurfaceElement] = []
    position = 0
    skipping = True
    for element in elements:
        key = _element_key(element)
        if skipping and key is not None:
            try:
                position = evicted.index(key, position) + 1
            except ValueError:
                skipping = False
            else:
                skipping = position < len(evicted)
                continue
        out.append(element)
    return out


def merge(prior: TranscriptState, snapshot: RawSnapshot, *, window: int | None = None) -> MergeResult:
    """Fold ``snapshot`` into ``prior``. ``prior`` is left untouched."""
    window = window or Config.TRANSCRIPT_WINDOW
    merger = _Merger(prior)
    evicted = list(prior.evicted)

    for element in _skip_evicted(coalesce_user_turns(snapshot.elements), evicted):
        if isinstance(element, UserTurn):
            merger.text(TranscriptEntry(role=Role.USER, text=element.text, images=element.images))
        elif isinstance(element, AgentText):
            merger.text(TranscriptEntry(role=Role.AGENT, text=element.text))
        elif isinstance(element, VideoPlaceholder):
            merger.placeholder(element)
        elif isinstance(element, VideoResolved):
            merger.resolved(element)
        elif isinstance(element, ProgressWidget):
            continue

    entries = merger.entries
    if len(entries) > window:
        evicted.extend(_evicted_key(dropped) for dropped in entries[:-window])
        entries = entries[-window:]
        merger.entries = entries

    state = TranscriptState(
        entries=entries,
        fingerprints=merger.fingerprints,
        evicted=evicted,
        progress=snapshot.progress,
    )
    return MergeResult(state=state, delta=merger.delta())
