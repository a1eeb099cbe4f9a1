"""Classification of raw test execution signals into run outcomes."""

from dataclasses import dataclass

from flake_quarantine.models.record import TestStatus


@dataclass(frozen=True, kw_only=True)
class Classification:
    """Outcome to record for an example and whether to hide its failure."""

    outcome: TestStatus
    passed: bool
    suppress_failure: bool = False


def classify_outcome(
    *,
    failed: bool,
    final_attempt: bool,
    retried: bool,
    quarantined: bool,
    skip_quarantined: bool,
) -> Classification | None:
    """Decide what to record for one execution of an example.

    Args:
        failed: Whether this execution failed
        final_attempt: Whether no retry will follow this execution
        retried: Whether earlier attempts of the example failed
        quarantined: Whether the example is quarantined in the baseline
        skip_quarantined: Whether failures of quarantined examples are hidden

    Returns:
        The classification, or None for a failed attempt that will be retried

    """
    if failed:
        if not final_attempt:
            return None
        if skip_quarantined and quarantined:
            return Classification(
                outcome="quarantined", passed=False, suppress_failure=True
            )
        return Classification(outcome="failing", passed=False)

    if retried:
        # Failed the first run but passed a subsequent one: flaky
        return Classification(outcome="quarantined", passed=False)
    if quarantined:
        return Classification(outcome="quarantined", passed=True)
    return Classification(outcome="passing", passed=True)
