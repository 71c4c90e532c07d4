"""Metrics collection for pipeline runs."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram


class PipelineMetrics:
    """Metrics for the analysis steps of one or more pipeline runs."""

    def __init__(self, registry: CollectorRegistry | None = None):
        self.registry = registry or CollectorRegistry()

        self.step_duration = Histogram(
            "tte_step_duration_seconds",
            "Duration of pipeline steps",
            ["step"],
            registry=self.registry,
        )

        self.step_rows = Gauge(
            "tte_step_rows",
            "Number of rows produced by a pipeline step",
            ["step"],
            registry=self.registry,
        )

        self.models_fitted = Counter(
            "tte_models_fitted_total",
            "Total number of fitted models",
            ["model", "status"],
            registry=self.registry,
        )

        self.errors = Counter(
            "tte_errors_total",
            "Total errors",
            ["error_type", "step"],
            registry=self.registry,
        )

    def record_step(self, step: str, duration: float, n_rows: int) -> None:
        """Record a completed pipeline step."""
        self.step_duration.labels(step=step).observe(duration)
        self.step_rows.labels(step=step).set(n_rows)

    def record_model_fit(self, model: str, status: str = "success") -> None:
        """Record a model fit."""
        self.models_fitted.labels(model=model, status=status).inc()

    def record_error(self, error_type: str, step: str) -> None:
        """Record an error."""
        self.errors.labels(error_type=error_type, step=step).inc()

    def snapshot(self) -> dict[str, dict[str, float]]:
        """Return current metric values keyed by metric name and label."""
        values: dict[str, dict[str, float]] = {}
        for metric in self.registry.collect():
            for sample in metric.samples:
                if sample.name.endswith(("_bucket", "_created")):
                    continue
                label = ",".join(f"{k}={v}" for k, v in sorted(sample.labels.items()))
                values.setdefault(sample.name, {})[label] = float(sample.value)
        return values


# Global metrics instance
_metrics: PipelineMetrics | None = None


def get_metrics() -> PipelineMetrics:
    """Get the global metrics instance."""
    global _metrics
    if _metrics is None:
        _metrics = PipelineMetrics()
    return _metrics


def reset_metrics() -> PipelineMetrics:
    """Replace the global metrics instance with a fresh one."""
    global _metrics
    _metrics = PipelineMetrics()
    return _metrics
