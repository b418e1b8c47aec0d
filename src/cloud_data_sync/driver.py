"""
Runs the sync engine over every configured mapping.

A failing mapping is recorded and the remaining mappings still run;
cancellation stops the loop after recording the interrupted mapping.
"""

import logging
import threading
import time
from typing import List, Optional, Sequence

from .config import BackendRegistry
from .engine import Mapping, MappingResult, MappingStatus, SyncEngine, mapping_key
from .exceptions import CloudSyncError, ConfigurationError, SyncCancelledError
from .metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class SyncDriver:
    """Synchronizes a list of mappings against a shared metadata store."""

    def __init__(
        self,
        store: MetadataStore,
        backends: BackendRegistry,
        engine: Optional[SyncEngine] = None,
    ):
        self.store = store
        self.backends = backends
        self.engine = engine or SyncEngine(store)

    def sync_all(
        self,
        mappings: Sequence[Mapping],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[MappingResult]:
        """
        Synchronize every mapping in order.

        Args:
            mappings: Mappings to synchronize
            cancel_event: Optional cancellation signal

        Returns:
            One MappingResult per mapping attempted

        Raises:
            ConfigurationError: If no mappings are given
        """
        if not mappings:
            raise ConfigurationError("No bucket mappings configured")

        logger.info(f"Starting synchronization of {len(mappings)} mappings")
        results: List[MappingResult] = []

        for mapping in mappings:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning("Cancellation requested, skipping remaining mappings")
                break

            result = self._sync_one(mapping, cancel_event)
            results.append(result)
            if result.status == MappingStatus.CANCELLED:
                break

        failed = sum(1 for r in results if not r.succeeded)
        logger.info(
            f"Synchronization finished: {len(results) - failed} succeeded, "
            f"{failed} failed or cancelled"
        )
        return results

    def _sync_one(
        self,
        mapping: Mapping,
        cancel_event: Optional[threading.Event],
    ) -> MappingResult:
        key = mapping_key(mapping)
        logger.info(f"[{key}] Starting synchronization")
        started = time.monotonic()

        try:
            source = self.backends.get(mapping.source_provider_id)
            target = self.backends.get(mapping.target_provider_id)
            result = self.engine.sync_mapping(mapping, source, target, cancel_event=cancel_event)
        except SyncCancelledError as e:
            result = e.result or MappingResult(mapping=mapping)
            result.status = MappingStatus.CANCELLED
            result.error_message = str(e)
            logger.warning(f"[{key}] Synchronization cancelled")
            return result
        except CloudSyncError as e:
            logger.error(f"[{key}] Error synchronizing mapping: {e}")
            return self._failed(mapping, str(e), started)
        except Exception as e:
            logger.exception(f"[{key}] Unexpected error synchronizing mapping")
            return self._failed(mapping, f"{type(e).__name__}: {e}", started)

        counts = result.counts
        logger.info(
            f"[{key}] Synchronization complete: synced={counts.synced} "
            f"skipped={counts.skipped} errors={counts.errors} removed={counts.removed} "
            f"delete_errors={counts.delete_errors} pruned={counts.pruned} "
            f"({result.duration_seconds:.2f}s)"
        )
        return result

    @staticmethod
    def _failed(mapping: Mapping, message: str, started: float) -> MappingResult:
        return MappingResult(
            mapping=mapping,
            status=MappingStatus.FAILED,
            error_message=message,
            duration_seconds=time.monotonic() - started,
        )
