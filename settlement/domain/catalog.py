from __future__ import annotations

import logging
import secrets
import string
from datetime import datetime
from typing import Any, Callable

from settlement.core.errors import DocumentStoreError
from settlement.domain.types import OrderItem
from settlement.ledger.store import DocumentStore, get_path

logger = logging.getLogger(__name__)

_BASE36 = string.digits + string.ascii_uppercase

Accessor = Callable[[dict[str, Any], OrderItem], Any]

# artwork has been stored under several field names over time; first hit wins
ARTWORK_ACCESSORS: tuple[Accessor, ...] = (
    lambda release, item: release.get("coverArtUrl"),
    lambda release, item: get_path(release, "artwork.cover"),
    lambda release, item: get_path(release, "artwork.artworkUrl"),
    lambda release, item: item.artwork,
    lambda release, item: item.image,
)

ARTIST_NAME_ACCESSORS: tuple[Accessor, ...] = (
    lambda release, item: release.get("artistName"),
    lambda release, item: getattr(item, "artist", None),
)

RELEASE_NAME_ACCESSORS: tuple[Accessor, ...] = (
    lambda release, item: release.get("releaseName"),
    lambda release, item: release.get("title"),
    lambda release, item: item.title,
)


def first_present(accessors: tuple[Accessor, ...], release: dict[str, Any], item: OrderItem) -> Any:
    for accessor in accessors:
        value = accessor(release, item)
        if value:
            return value
    return None


def generate_order_number(now: datetime) -> str:
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"FW-{now.strftime('%y%m%d')}-{suffix}"


def _track_name(track: dict[str, Any]) -> str:
    return str(track.get("trackName") or track.get("name") or "")


def resolve_track(tracks: list[dict[str, Any]], item: OrderItem) -> dict[str, Any] | None:
    if item.track_id:
        wanted = str(item.track_id)
        for track in tracks:
            if wanted in (track.get("id"), track.get("trackId"), str(track.get("trackNumber"))):
                return track

    if item.name:
        parts = item.name.split(" - ")
        name = " - ".join(parts[1:]) if len(parts) > 1 else item.name
        for track in tracks:
            if _track_name(track).lower() == name.lower():
                return track

    if item.title:
        for track in tracks:
            if _track_name(track).lower() == item.title.lower():
                return track
    return None


def _download_entry(track: dict[str, Any], fallback_name: str | None = None) -> dict[str, Any]:
    return {
        "name": _track_name(track) or fallback_name,
        "mp3Url": track.get("mp3Url"),
        "wavUrl": track.get("wavUrl"),
    }


def enrich_item(store: DocumentStore, item: OrderItem) -> OrderItem:
    """Attach artwork and download links from the parent release.

    Only catalog-backed items (digital, track, label vinyl) are enriched. A
    track item resolves its track by id, then by name, then by title, and
    falls back to the whole tracklist.
    """
    release_id = item.catalog_release_id
    if item.type == "merch" or item.listing_id or not release_id:
        return item

    try:
        release = store.get("releases", release_id)
    except DocumentStoreError as exc:
        logger.warning("release lookup failed for item=%s release=%s: %s", item.id, release_id, exc)
        return item.model_copy(update={"release_id": release_id})
    if release is None:
        return item.model_copy(update={"release_id": release_id})

    tracks = list(release.get("tracks") or [])
    artwork = first_present(ARTWORK_ACCESSORS, release, item)
    downloads = {
        "artistName": first_present(ARTIST_NAME_ACCESSORS, release, item) or "Unknown Artist",
        "releaseName": first_present(RELEASE_NAME_ACCESSORS, release, item) or "Release",
        "artworkUrl": artwork,
        "tracks": [_download_entry(track) for track in tracks],
    }
    if item.type == "track":
        track = resolve_track(tracks, item)
        if track is not None:
            downloads["tracks"] = [_download_entry(track, fallback_name=item.title)]
        else:
            logger.info("track not matched for item=%s, including full tracklist", item.id)

    return item.model_copy(
        update={
            "release_id": release_id,
            "artwork": artwork,
            "image": artwork,
            "downloads": downloads,
        }
    )
