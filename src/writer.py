"""
Merge Writer - computes and writes the next state of a target secret.

The controller owns the keys it produces from a declaration. Keys written by
anything else are left alone, keys the declaration stopped producing are
removed, and nothing is written when the result would not change.
"""

import logging
from typing import Any, Dict, Optional, Set, Union

from db import WriteOutcome
from errors import ReconcileAbandoned, WriteConflict

logger = logging.getLogger(__name__)

Log = Union[logging.Logger, logging.LoggerAdapter]


def merge_target(
    existing: Optional[Dict[str, Any]],
    managed: Dict[str, bytes],
    owner: str,
) -> Dict[str, bytes]:
    """
    Compute the next data of a target record.

    Args:
        existing: The current record as returned by the database, or None
        managed: The keys and values produced from the declaration
        owner: Name of the declaration writing the record

    Returns:
        Unmanaged keys of the existing record overlaid with the managed keys
    """
    if existing is None:
        return dict(managed)

    data = existing.get("data") or {}
    if existing.get("owner") == owner:
        previously_managed: Set[str] = set(existing.get("managed_keys") or [])
    else:
        # Another declaration wrote it; none of its keys are ours to drop
        previously_managed = set()

    result = {
        key: value for key, value in data.items() if key not in previously_managed
    }
    result.update(managed)
    return result


class MergeWriter:
    """Applies managed keys to target records with optimistic concurrency."""

    def __init__(self, db: Any, max_conflict_retries: int = 3):
        self.db = db
        self.max_conflict_retries = max_conflict_retries

    async def apply(
        self,
        namespace: str,
        target_name: str,
        managed: Dict[str, bytes],
        owner: str,
        owner_generation: int,
        log: Optional[Log] = None,
    ) -> bool:
        """
        Merge managed keys into a target record and write it if it changed.

        Args:
            namespace: Namespace of the record and its owner
            target_name: Name of the target record
            managed: Keys and values produced from the declaration
            owner: Name of the declaration
            owner_generation: Generation of the declaration the values were
                produced from
            log: Logger for this reconcile

        Returns:
            True if a write happened, False if the record was already current

        Raises:
            WriteConflict: If the record kept changing underneath us
            ReconcileAbandoned: If the declaration changed or was deleted
        """
        log = log or logger
        managed_keys = sorted(managed)

        for attempt in range(self.max_conflict_retries + 1):
            existing = await self.db.get_target_secret(namespace, target_name)
            data = merge_target(existing, managed, owner)

            if (
                existing is not None
                and existing.get("owner") == owner
                and existing.get("data") == data
                and sorted(existing.get("managed_keys") or []) == managed_keys
            ):
                log.debug(f"Target secret {target_name} is up to date")
                return False

            previous_owner = existing.get("owner") if existing else None
            if previous_owner and previous_owner != owner:
                log.warning(
                    f"Target secret {target_name} is owned by {previous_owner}; "
                    f"taking ownership for {owner} and keeping its other keys"
                )

            resource_version = existing["resource_version"] if existing else None
            outcome = await self.db.write_target_secret(
                namespace,
                target_name,
                data,
                managed_keys,
                owner,
                owner_generation,
                resource_version,
            )

            if outcome == WriteOutcome.WRITTEN:
                action = "Created" if existing is None else "Updated"
                log.info(
                    f"{action} target secret {target_name} "
                    f"({len(managed_keys)} managed key(s))"
                )
                return True

            if outcome == WriteOutcome.SUPERSEDED:
                raise ReconcileAbandoned(
                    f"declaration {owner} changed or was deleted before "
                    f"target secret {target_name} was written"
                )

            log.debug(
                f"Conflict writing target secret {target_name} "
                f"(attempt {attempt + 1}/{self.max_conflict_retries + 1})"
            )

        raise WriteConflict(
            f"target secret {target_name} changed concurrently "
            f"{self.max_conflict_retries + 1} time(s)"
        )
