import asyncio
import logging

from .aggregator import aggregate
from .config import ReconcilerConfig
from .discovery import BridgeDiscovery, DiscoveryContext, DiscoveryReport
from .errors import NoDataAvailableError
from .models import AggregationResult
from .registry import BridgeRegistry

# Get logger for this module
logger = logging.getLogger(__name__)


class BridgeReconciler:
    """
    Bridge Reconciler that discovers bridge events on every configured network
    and reconciles claims against the transfers they reference.
    """

    def __init__(
        self,
        config: ReconcilerConfig,
        registry: BridgeRegistry | None = None,
        context: DiscoveryContext | None = None
    ) -> None:
        """
        Initialize the BridgeReconciler with configuration.

        :param config: Reconciler configuration object
        :param registry: Registry to use instead of loading ``config.registry_path``
        :param context: Pre-built discovery context (mainly for tests)
        """
        self.config = config
        logger.info("Starting BridgeReconciler initialization")

        try:
            self.config.log_config()

            logger.debug("Loading bridge registry...")
            self.registry = registry or BridgeRegistry.from_file(config.registry_path)

            logger.debug("Creating discovery context...")
            self.context = context or DiscoveryContext(self.registry, config)
            self.discovery = BridgeDiscovery(self.context)

            self.shutdown_event = asyncio.Event()
            self.last_report: DiscoveryReport | None = None
            self.last_result: AggregationResult | None = None

            logger.info(
                f"BridgeReconciler initialized ({len(self.registry.networks)} networks, "
                f"{len(self.registry.bridges)} bridges)"
            )

        except Exception as e:
            logger.error(f"BridgeReconciler initialization failed: {e}")
            logger.error(f"Exception type: {type(e).__name__}", exc_info=True)
            raise

    async def run_once(self, window_hours: float | None = None) -> AggregationResult:
        """
        Run one discovery pass over every bridge and reconcile the results.

        :param window_hours: Look-back window, defaults to the configured one
        :return: Classified reconciliation result
        :raises NoDataAvailableError: If no bridge could be queried
        """
        report = await self.discovery.discover_all(window_hours=window_hours)
        self.last_report = report
        report.require_data()

        result = aggregate(report.all_claims, report.all_transfers, self.config.policy)
        self.last_result = result
        self.log_result(report, result)
        return result

    def log_result(self, report: DiscoveryReport, result: AggregationResult) -> None:
        stats = report.stats
        logger.info("=" * 60)
        logger.info("Reconciliation Summary")
        logger.info("=" * 60)
        logger.info(f"  Bridges: {stats['successful_bridges']}/{stats['total_bridges']} queried")
        if report.timed_out:
            logger.info("  Discovery: timed out, results are partial")
        logger.info(f"  Transfers: {result.total_transfers}")
        logger.info(f"  Claims: {result.total_claims}")
        logger.info(f"  Completed: {len(result.completed_transfers)}")
        logger.info(f"  Pending: {len(result.pending_transfers)}")
        logger.info(f"  Suspicious: {len(result.suspicious_claims)}")

        for item in result.suspicious_claims:
            claim = item.claim
            fields = ", ".join(m.field for m in item.parameter_mismatches)
            logger.warning(
                f"✗ Suspicious claim #{claim.claim_num if claim else '?'} "
                f"({item.reason.value if item.reason else 'unknown'}"
                f"{': ' + fields if fields else ''}) txid={claim.txid if claim else ''}"
            )

        for failed in (r for r in report.results if not r.success):
            logger.warning(f"✗ {failed}")

        self.context.decoder.log_metrics()
        logger.info("=" * 60)

    async def run(self, window_hours: float | None = None) -> None:
        """
        Main entry point for service mode.
        Runs a reconciliation pass every polling interval until shut down.
        """
        interval = self.config.discovery.polling_interval
        logger.info(f"Starting BridgeReconciler with {interval} second interval...")

        try:
            while not self.shutdown_event.is_set():
                try:
                    await self.run_once(window_hours)
                except NoDataAvailableError as e:
                    logger.error(f"Reconciliation skipped: {e}")

                try:
                    await asyncio.wait_for(self.shutdown_event.wait(), timeout=interval)
                except TimeoutError:
                    pass
        finally:
            logger.info("Cleaning up...")
            await self.context.aclose()
            logger.info("BridgeReconciler stopped")

    async def shutdown(self) -> None:
        """Gracefully stop the polling loop."""
        logger.info("Shutting down BridgeReconciler...")
        self.shutdown_event.set()
