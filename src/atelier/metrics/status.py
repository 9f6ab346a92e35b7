"""Pipeline status derivation from stage outcomes and metrics.

- fail: a mandatory stage (segment, recolor) raised
- partial_success: an optional stage rolled back, or a strict-mode
  threshold was exceeded
- success: otherwise

Threshold violations are review signals: they add warnings and downgrade to
partial_success but never fail a run.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from atelier.metrics.edit_quality import EditMetrics
from atelier.models.types import PipelineStatus, ValidationMode

# Strict-mode thresholds
STRICT_SKIN_DELTA_E_CEILING = 3.0  # Above this = skin tone drifted
STRICT_GARMENT_SSIM_FLOOR = 0.82  # Below this = garment texture lost
STRICT_BACKGROUND_SHIFT_CEILING = 2.0  # Above this (%) = background leaked

FATAL_ERROR_WARNING = "FATAL_ERROR"


@dataclass
class ValidationResult:
    """Result of threshold validation.

    Attributes:
        passed: Whether every checked threshold held.
        warnings: Warning codes, one per violated threshold.
        reasons: Human-readable reason strings.
    """

    passed: bool
    warnings: list[str] = field(default_factory=list)
    reasons: list[str] = field(default_factory=list)


def validate_metrics(metrics: EditMetrics, mode: ValidationMode) -> ValidationResult:
    """Check metrics against the strict thresholds.

    Args:
        metrics: Metrics of the recolor edit.
        mode: ``relaxed`` keeps metrics informational.

    Returns:
        ValidationResult.
    """
    if mode == "relaxed":
        return ValidationResult(passed=True)

    warnings: list[str] = []
    reasons: list[str] = []

    if metrics.skin_delta_e > STRICT_SKIN_DELTA_E_CEILING:
        warnings.append("VALIDATION_SKIN_DELTA_E_EXCEEDED")
        reasons.append(f"skin_delta_e={metrics.skin_delta_e:.2f} > {STRICT_SKIN_DELTA_E_CEILING}")

    if metrics.garment_ssim < STRICT_GARMENT_SSIM_FLOOR:
        warnings.append("VALIDATION_GARMENT_SSIM_LOW")
        reasons.append(f"garment_ssim={metrics.garment_ssim:.3f} < {STRICT_GARMENT_SSIM_FLOOR}")

    if metrics.background_shift > STRICT_BACKGROUND_SHIFT_CEILING:
        warnings.append("VALIDATION_BACKGROUND_SHIFT_EXCEEDED")
        reasons.append(
            f"background_shift={metrics.background_shift:.2f}% > {STRICT_BACKGROUND_SHIFT_CEILING}%"
        )

    return ValidationResult(passed=not warnings, warnings=warnings, reasons=reasons)


def resolve_pipeline_status(fatal: bool, rolled_back: bool, validation: ValidationResult | None) -> PipelineStatus:
    """Combine stage outcomes into the run status (fail > partial_success > success)."""
    if fatal:
        return "fail"
    if rolled_back or (validation is not None and not validation.passed):
        return "partial_success"
    return "success"
