"""Commission reconciliation run controller.

One run executes three dependent stages against a run-scoped snapshot:

1. Matching: re-link released installments without DANFE to sales orders
2. Invoice resolution: fetch NF-e data from Bling for orders without DANFE
3. Propagation: copy DANFE links from orders onto their installments

With ``dry_run`` every stage computes exactly what a real run would, against
the same in-memory state, and nothing is written to the store. Writing runs
hold an advisory lock so two of them never race on the same installments.
"""

from __future__ import annotations

import logging
import os
import socket
import time
import uuid
from collections.abc import Callable
from decimal import Decimal
from typing import TYPE_CHECKING

from ..erp_client import ErpClient, TokenManager
from ..matching.engine import AmbiguousMatch, MatchingEngine, NotFound, UniqueMatch
from ..schemas.report import RunParams, RunReport
from ..state_store import ReconciliationSnapshot, StateStore
from .invoice_resolver import InvoiceResolver
from .propagator import Propagator

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Orchestrates matching, NF-e resolution and DANFE propagation.

    Safe to run repeatedly: every write fills empty fields only, so a second
    run over the same data writes nothing new.

    Usage:
        service = ReconciliationService.from_config(config)
        report = service.run(RunParams(dry_run=True))
    """

    RUN_LOCK_NAME = "commission-reconciliation"

    def __init__(
        self,
        store: StateStore,
        erp_client: ErpClient,
        config: Config,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Initialize the reconciliation service.

        Args:
            store: State store (read for the snapshot, written unless dry-run).
            erp_client: Bling client, with its TokenManager.
            config: Application configuration.
            sleep: Used for NF-e request pacing; injected for tests.
        """
        self.store = store
        self.erp = erp_client
        self.config = config
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Config, store: StateStore | None = None) -> ReconciliationService:
        """Wire store, token manager and client from configuration."""
        store = store or StateStore(config.state_db_path)
        token_manager = TokenManager.from_config(config.erp, store)
        return cls(store, ErpClient.from_config(config.erp, token_manager), config)

    def default_params(self) -> RunParams:
        recon = self.config.reconciliation
        return RunParams(
            dry_run=True,
            tolerance_value=Decimal(str(recon.tolerance_value)),
            tolerance_days=recon.tolerance_days,
            lookup_draft_orders=recon.lookup_draft_orders,
        )

    def run(self, params: RunParams | None = None) -> RunReport:
        """Run all three stages.

        Raises:
            RunLockError: Another writing run holds the lock
            ErpConfigurationError: Bling credentials missing
            TokenRefreshError: Bling rejected the refresh token
        """
        params = params or self.default_params()
        logger.info(
            f"Starting reconciliation (dry_run={params.dry_run}, "
            f"tolerance_value={params.tolerance_value}, tolerance_days={params.tolerance_days})"
        )

        if params.dry_run:
            return self._run_stages(params)

        owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
        self.store.acquire_run_lock(self.RUN_LOCK_NAME, owner)
        try:
            return self._run_stages(params)
        finally:
            self.store.release_run_lock(self.RUN_LOCK_NAME, owner)

    def _run_stages(self, params: RunParams) -> RunReport:
        start_time = time.time()
        report = RunReport(params=params)

        # Fails fast on missing or rejected credentials, before any processing
        self.erp.token_manager.get_valid_token()

        recon = self.config.reconciliation
        snapshot = ReconciliationSnapshot.load(self.store, recon.released_status)
        report.installments_processed = len(snapshot.installments)
        logger.info(f"Released installments without DANFE: {len(snapshot.installments)}")

        # Stage 1: matching
        engine = MatchingEngine(self.store, snapshot, params, recon, erp_client=self.erp)
        for installment in snapshot.installments:
            outcome = engine.resolve(installment)
            if isinstance(outcome, UniqueMatch):
                report.linked.append(outcome.to_result())
            elif isinstance(outcome, AmbiguousMatch):
                report.ambiguous.append(outcome.to_result())
            elif isinstance(outcome, NotFound):
                report.not_found.append(outcome.to_result())
        report.erp_ids_resolved = engine.resolved_erp_ids
        logger.info(
            f"Linked: {len(report.linked)}, ambiguous: {len(report.ambiguous)}, "
            f"not found: {len(report.not_found)}"
        )

        # Stage 2: NF-e resolution
        InvoiceResolver(self.erp, self.store, snapshot, params, recon, sleep=self._sleep).run(
            report
        )

        # Stage 3: propagation
        report.propagated = Propagator(self.store, snapshot, params).run()

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(f"Reconciliation completed in {duration_ms}ms: {report.summary()}")
        return report
