"""
Integrity gate for the primary base tier.

The digest of the primary base container is recorded by every reconcile and
tier migration. If the container changes behind our back (an official game
update, a file verification run) the recorded baseline no longer describes
it, and merging against it would resurrect stale content.
"""

from __future__ import annotations

from errors import IntegrityMismatchError
from fs_utils import file_digest
from layout import GameLayout
from manifest_schema import Manifest


def base_tier_digest(layout: GameLayout) -> str | None:
    path = layout.primary_base_path
    if not path.exists():
        return None
    return file_digest(path)


def verify_base_integrity(layout: GameLayout, manifest: Manifest):
    """Raise ``IntegrityMismatchError`` unless the primary base tier matches the manifest."""
    recorded = manifest.baseline.digest
    if recorded is None:
        raise IntegrityMismatchError(
            "No base tier digest recorded; run reconcile to synchronize the baseline"
        )
    current = base_tier_digest(layout)
    if current != recorded:
        raise IntegrityMismatchError(
            f"{layout.primary_base_container} changed since the last reconcile "
            f"(recorded {recorded}, found {current}); run reconcile before modding"
        )
