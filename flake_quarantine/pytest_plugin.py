"""pytest plugin binding a quarantine session to the test run."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Any

import pytest

from flake_quarantine.config import load_config
from flake_quarantine.engine import QuarantineEngine
from flake_quarantine.errors import ConfigurationError
from flake_quarantine.models.record import build_test_id
from flake_quarantine.policy import classify_outcome

log = logging.getLogger(__name__)

PLUGIN_NAME = "flake-quarantine-session"


def pytest_addoption(parser: pytest.Parser) -> None:
    """Register command line and ini options."""
    group = parser.getgroup("quarantine", "flaky test quarantine")
    group.addoption(
        "--quarantine-config",
        dest="quarantine_config",
        type=Path,
        default=None,
        help="Path to the quarantine YAML/JSON configuration",
    )
    group.addoption(
        "--no-quarantine",
        dest="no_quarantine",
        action="store_true",
        default=False,
        help="Disable the quarantine session",
    )
    parser.addini(
        "quarantine_config",
        help="Path to the quarantine configuration, relative to the rootdir",
        default="",
    )


def pytest_configure(config: pytest.Config) -> None:
    """Create the quarantine session when a configuration is given."""
    config.addinivalue_line(
        "markers", "quarantine: treat the test as quarantined regardless of storage"
    )
    if config.getoption("no_quarantine"):
        return

    path: Path | None = config.getoption("quarantine_config")
    if path is None:
        ini_path = config.getini("quarantine_config")
        if not ini_path:
            return
        path = config.rootpath / ini_path

    try:
        engine = QuarantineEngine.from_config(load_config(path))
    except ConfigurationError as exc:
        raise pytest.UsageError(str(exc)) from exc

    config.pluginmanager.register(QuarantinePlugin(engine), PLUGIN_NAME)


def item_test_id(item: pytest.Item) -> tuple[str, str, str]:
    """Return the id, location and description of a collected test."""
    location, _, description = item.nodeid.partition("::")
    return build_test_id(location, description), location, description


def rerun_patterns(item: pytest.Item, name: str) -> list[str]:
    """Error patterns of a rerun filter, from the flaky marker or the options."""
    marker = item.get_closest_marker("flaky")
    if marker is not None and name in marker.kwargs:
        value = marker.kwargs[name]
        return [value] if isinstance(value, str) else list(value)
    return list(getattr(item.config.option, name, None) or [])


def rerun_filters_match(item: pytest.Item, report: pytest.TestReport) -> bool:
    """Whether the failure passes the --only-rerun and --rerun-except filters."""
    crash = getattr(report.longrepr, "reprcrash", None)
    message = crash.message if crash is not None else report.longreprtext

    only = rerun_patterns(item, "only_rerun")
    if only and not any(re.search(pattern, message) for pattern in only):
        return False
    excluded = rerun_patterns(item, "rerun_except")
    return not any(re.search(pattern, message) for pattern in excluded)


def will_rerun(item: pytest.Item, report: pytest.TestReport) -> bool:
    """Whether pytest-rerunfailures runs the item again after this report."""
    if not report.failed or not item.config.pluginmanager.hasplugin("rerunfailures"):
        return False
    from pytest_rerunfailures import get_reruns_condition, get_reruns_count

    execution_count: int = getattr(item, "execution_count", 1)
    if execution_count > (get_reruns_count(item) or 0):
        return False
    return bool(get_reruns_condition(item)) and rerun_filters_match(item, report)


class QuarantinePlugin:
    """Hooks fetching, recording and uploading test statuses."""

    def __init__(self, engine: QuarantineEngine) -> None:
        self.engine = engine

    def pytest_sessionstart(self, session: pytest.Session) -> None:
        """Fetch the baseline before any test runs."""
        asyncio.run(self.engine.fetch_test_statuses())

    @pytest.hookimpl(wrapper=True)
    def pytest_runtest_makereport(
        self, item: pytest.Item, call: pytest.CallInfo[None]
    ) -> Any:
        """Record test outcomes and hide failures of quarantined tests.

        Call reports are always recorded. Setup reports are recorded only
        when they fail, since pytest then skips the call phase.
        """
        report: pytest.TestReport = yield
        if report.skipped or not (
            report.when == "call" or (report.when == "setup" and report.failed)
        ):
            return report

        test_id, location, description = item_test_id(item)
        quarantined = (
            self.engine.test_quarantined(test_id)
            or item.get_closest_marker("quarantine") is not None
        )
        execution_count: int = getattr(item, "execution_count", 1)
        classification = classify_outcome(
            failed=report.failed,
            final_attempt=not will_rerun(item, report),
            retried=execution_count > 1,
            quarantined=quarantined,
            skip_quarantined=self.engine.config.skip_quarantined_tests,
        )
        if classification is None:
            return report

        self.engine.record_test(
            test_id,
            classification.outcome,
            passed=classification.passed,
            full_description=description,
            location=location,
            extra_attributes=dict(item.user_properties) or None,
        )
        if classification.suppress_failure:
            report.outcome = "skipped"
            report.wasxfail = f"quarantined: {test_id}"
        return report

    def pytest_sessionfinish(self, session: pytest.Session) -> None:
        """Upload the run's outcomes."""
        if self.engine.config.record_tests:
            asyncio.run(self.engine.upload_tests())

    def pytest_terminal_summary(
        self, terminalreporter: pytest.TerminalReporter
    ) -> None:
        """Print the quarantine summary."""
        if self.engine.config.log_summary:
            terminalreporter.write_sep("-", "quarantine summary")
            terminalreporter.write_line(self.engine.summary())
