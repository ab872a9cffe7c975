from claw_keeper.store.marker_store import SyncMarker, SyncMarkerStore, parse_marker_text

__all__ = ["SyncMarker", "SyncMarkerStore", "parse_marker_text"]
