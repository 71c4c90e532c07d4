"""Example: emulating statin-initiation trials for dementia.

This example runs the complete analysis on a simulated primary-care cohort:
eligibility, time-to-event outcomes with death as a competing risk,
person-period formatting and intention-to-treat and per-protocol
emulations with inverse probability weights.

Settings can be overridden with ``TTE_``-prefixed environment variables,
e.g. ``TTE_N_PATIENTS=5000 TTE_OUTPUT_DIR=out python examples/dementia_statin_example.py``.
"""

from shared.config import TrialEmulationConfig
from shared.observability import setup_logging

from dementia_tte import run_pipeline


def main():
    config = TrialEmulationConfig()
    setup_logging(config)

    print("Running dementia target trial emulation...")
    print(f"  patients: {config.n_patients:,}")
    print(f"  period length: {config.period_length_days} days")
    print(f"  competing events: {config.competing_event_handling}")
    print(f"  estimands: {', '.join(config.estimands)}")

    result = run_pipeline(config)

    print("\nAttrition")
    print(result.attrition.to_string(index=False))

    print("\nCrude outcome rates")
    print(result.outcome_summary.to_string(index=False))

    for estimand, res in result.results.items():
        print()
        print(res.generate_report().to_string())

    if result.comparison is not None:
        print("\nITT vs per-protocol")
        print(
            f"  odds ratios: {result.comparison['itt_odds_ratio']:.3f} vs "
            f"{result.comparison['pp_odds_ratio']:.3f}"
        )
        print(f"  {result.comparison['interpretation']}")

    if result.output_files:
        print(f"\nArtefacts written to {config.output_dir}:")
        for name, path in result.output_files.items():
            print(f"  {name}: {path}")


if __name__ == "__main__":
    main()
