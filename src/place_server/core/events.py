"""
Replica bus event types.

The replica engine publishes these on its ``CanvasBus`` so a rendering layer
can redraw without polling. Names use "domain:action" in past tense: each
event records something that already happened to the replica.

    from place_server.core.events import Events

    engine.bus.on(Events.PIXEL_CHANGED, redraw_pixel)
"""


class Events:
    """
    All replica event types.

    Class attributes, since event types are global constants.
    """

    # =========================================================================
    # PIXELS
    # =========================================================================

    PIXEL_CHANGED = "pixel:changed"
    """
    The displayed color of a pixel changed, from a snapshot load, a live
    event, or an optimistic local write.

    Detail: {
        "px": int,
        "py": int,
        "color": int,
        "previous": int,
        "status": str,      # PixelStatus value
    }
    """

    PIXEL_ROLLED_BACK = "pixel:rolled_back"
    """
    An optimistic write failed and the pixel went back to its previous color.

    Detail: {"px": int, "py": int, "color": int, "error": str}
    """

    # =========================================================================
    # SHARDS
    # =========================================================================

    SHARD_UNLOCKED = "shard:unlocked"
    """
    A shard became writable (delegation confirmed, or initialized).

    Detail: {"shard_x": int, "shard_y": int, "owner": str | None}
    """

    SHARD_LOCKED = "shard:locked"
    """
    A shard stopped being writable: undelegated, or an optimistic unlock
    was rolled back.

    Detail: {"shard_x": int, "shard_y": int}
    """

    # =========================================================================
    # WRITES AND SNAPSHOTS
    # =========================================================================

    WRITE_FAILED = "write:failed"
    """
    A ledger write failed after any retry. Reported exactly once per write.

    Detail: {
        "action": str,      # "place" | "erase" | "unlock"
        "shard_x": int,
        "shard_y": int,
        "px": int | None,
        "py": int | None,
        "error": str,
        "error_type": str,
    }
    """

    SNAPSHOT_LOADED = "snapshot:loaded"
    """
    A bulk snapshot was merged into the replica.

    Detail: {"pixels": int, "applied": int}
    """


def _standard_events() -> set[str]:
    return {
        value
        for name, value in vars(Events).items()
        if isinstance(value, str) and not name.startswith("_")
    }


def is_valid_event_type(event_type: str) -> bool:
    """Return True if ``event_type`` is one of the constants above."""
    return event_type in _standard_events()


def get_all_event_types() -> list[str]:
    """Return every replica event type, sorted."""
    return sorted(_standard_events())
