"""
Prometheus metrics for image builds and distribution.
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, start_http_server

from .common.logger import get_logger

logger = get_logger(__name__)


class ImageMetrics:
    """
    Prometheus metrics for engine operations.
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """
        Initialize image metrics.

        Args:
            registry: Prometheus registry to use (default: global registry)
        """
        self.registry = registry
        kwargs = {'registry': registry} if registry is not None else {}

        # Build metrics
        self.builds_total = Counter(
            'mlimage_builds_total',
            'Total number of image builds',
            ['result'],
            **kwargs
        )

        self.build_duration = Histogram(
            'mlimage_build_duration_seconds',
            'Image build duration in seconds',
            ['result'],
            buckets=[10, 30, 60, 120, 300, 600, 1200, 1800, 3600],
            **kwargs
        )

        self.build_steps = Counter(
            'mlimage_build_steps_total',
            'Total number of recipe steps started by the builder',
            **kwargs
        )

        # Distribution metrics
        self.distribution_ops = Counter(
            'mlimage_distribution_operations_total',
            'Total number of save/load/tag/push/pull operations',
            ['operation', 'result'],
            **kwargs
        )

        # Verification metrics
        self.verifications = Counter(
            'mlimage_verifications_total',
            'Total number of in-container library checks',
            ['library', 'gpu_available'],
            **kwargs
        )

        logger.debug("Initialized image metrics")

    def record_build(self, duration: float, result: str) -> None:
        """
        Record a finished build.

        Args:
            duration: Duration in seconds
            result: Result of the build (success, failed)
        """
        self.builds_total.labels(result=result).inc()
        self.build_duration.labels(result=result).observe(duration)

    def record_step(self) -> None:
        self.build_steps.inc()

    def record_distribution(self, operation: str, result: str) -> None:
        """
        Record a distribution operation.

        Args:
            operation: save, load, tag, push or pull
            result: success or failed
        """
        self.distribution_ops.labels(operation=operation, result=result).inc()

    def record_verification(self, library: str, gpu_available: bool) -> None:
        self.verifications.labels(
            library=library,
            gpu_available=str(gpu_available).lower()
        ).inc()


def start_metrics_server(port: int) -> None:
    """Expose the default registry over HTTP on the given port."""
    start_http_server(port)
    logger.info(f"Serving metrics on port {port}")


# Global metrics instance
metrics = ImageMetrics()
