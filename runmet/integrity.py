"""Integrity checks comparing cached rollups and stored data against ground truth."""

from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import structlog

from .cache import RollupCache
from .ports import MaintenanceRepository

log = structlog.get_logger(component="integrity")

SEVERITIES = ("error", "warning", "info")


class IntegrityChecker:
    """Runs store and cache health checks and applies the repairs that are safe.

    Issues that would need lost data to repair (for example runs missing their
    timestamp) are reported and never marked fixable.
    """

    def __init__(
        self,
        repo: MaintenanceRepository,
        cache: RollupCache,
        drift_error_threshold: int = 10,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repo = repo
        self.cache = cache
        self.drift_error_threshold = drift_error_threshold
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def run_all_checks(self) -> Dict:
        issues: List[Dict] = []
        for check in (
            self.check_orphaned_runs,
            self.check_cache_consistency,
            self.check_duplicate_runs,
            self.check_null_required_fields,
            self.check_goal_progress,
            self.check_session_data,
        ):
            issues.extend(check())
        return self._report(issues)

    def check_orphaned_runs(self) -> List[Dict]:
        count = self.repo.count_orphaned_runs()
        if count == 0:
            return []
        return [
            _issue(
                "warning",
                "orphaned_data",
                f"Found {count} runs with invalid task references",
                fix="create_missing_tasks",
            )
        ]

    def check_cache_consistency(self) -> List[Dict]:
        issues = []
        cached = self.cache.read("overall")
        actual = self.repo.count_runs()

        if cached is None:
            issues.append(
                _issue("warning", "cache_sync", "Overall rollup has not been built", fix="rebuild_cache")
            )
        else:
            difference = abs(cached["total_runs"] - actual)
            if difference > 0:
                severity = "error" if difference > self.drift_error_threshold else "warning"
                issues.append(
                    _issue(
                        severity,
                        "cache_sync",
                        f"Cache out of sync: cached {cached['total_runs']} runs, "
                        f"actual {actual} runs (diff: {difference})",
                        fix="rebuild_cache",
                    )
                )

        actual_by_task = self.repo.count_runs_by_task()
        mismatched = 0
        for task_id in self.cache.task_ids():
            row = self.cache.read("task", task_id)
            if row is not None and row["total_runs"] != actual_by_task.get(task_id, 0):
                mismatched += 1
        if mismatched:
            issues.append(
                _issue(
                    "warning",
                    "cache_sync",
                    f"{mismatched} tasks have incorrect cached run counts",
                    fix="rebuild_cache",
                )
            )
        return issues

    def check_duplicate_runs(self) -> List[Dict]:
        count = self.repo.count_duplicate_hashes()
        if count == 0:
            return []
        return [
            _issue(
                "info",
                "duplicates",
                f"Found {count} duplicate run hashes (expected for re-plays)",
            )
        ]

    def check_null_required_fields(self) -> List[Dict]:
        count = self.repo.count_incomplete_runs()
        if count == 0:
            return []
        return [_issue("warning", "null_data", f"Found {count} runs with missing critical data")]

    def check_goal_progress(self) -> List[Dict]:
        count = self.repo.count_orphaned_goal_progress()
        if count == 0:
            return []
        return [
            _issue(
                "warning",
                "orphaned_data",
                f"Found {count} goal progress entries for deleted goals",
                fix="clean_orphaned_goal_progress",
            )
        ]

    def check_session_data(self) -> List[Dict]:
        count = self.repo.count_unclosed_sessions()
        if count == 0:
            return []
        return [
            _issue(
                "warning",
                "invalid_state",
                f"Found {count} closed sessions with no end time",
                fix="fix_session_end_times",
            )
        ]

    def auto_fix(self, report: Dict) -> Dict:
        """Apply fixes for fixable issues in ``report``.

        Each fix kind runs once even if several issues share it. A failing fix
        is logged and recorded; the remaining fixes still run.
        """
        fixes: Dict[str, Callable[[], object]] = {
            "rebuild_cache": self.cache.rebuild_all,
            "create_missing_tasks": self.repo.create_missing_tasks,
            "clean_orphaned_goal_progress": self.repo.delete_orphaned_goal_progress,
            "fix_session_end_times": self.repo.close_unclosed_sessions,
        }
        result: Dict[str, List[str]] = {"fixed": [], "failed": [], "skipped": []}
        applied = set()

        for issue in report["issues"]:
            if not issue["fixable"]:
                result["skipped"].append(issue["message"])
                continue
            fix_name = issue["fix"]
            if fix_name in applied:
                result["fixed"].append(issue["message"])
                continue
            fix = fixes.get(fix_name)
            if fix is None:
                log.warning("autofix_unknown", fix=fix_name, message=issue["message"])
                result["failed"].append(issue["message"])
                continue
            try:
                fix()
            except Exception as exc:
                log.error("autofix_failed", fix=fix_name, message=issue["message"], error=str(exc))
                result["failed"].append(issue["message"])
                continue
            applied.add(fix_name)
            log.info("autofix_applied", fix=fix_name, message=issue["message"])
            result["fixed"].append(issue["message"])

        return result

    def database_stats(self) -> Dict[str, int]:
        return dict(self.repo.count_table_rows())

    def _report(self, issues: List[Dict]) -> Dict:
        counts = {severity: sum(1 for issue in issues if issue["severity"] == severity) for severity in SEVERITIES}
        report = {
            "healthy": counts["error"] == 0 and counts["warning"] == 0,
            "errors": counts["error"],
            "warnings": counts["warning"],
            "info": counts["info"],
            "issues": issues,
            "timestamp": self.clock().isoformat(),
        }

        if report["healthy"]:
            log.info("integrity_healthy", info=counts["info"])
        else:
            log.warning("integrity_unhealthy", errors=counts["error"], warnings=counts["warning"])
            for issue in issues:
                log.warning("integrity_issue", severity=issue["severity"], category=issue["category"], message=issue["message"])
        return report


def _issue(severity: str, category: str, message: str, fix: Optional[str] = None) -> Dict:
    issue = {
        "severity": severity,
        "category": category,
        "message": message,
        "fixable": fix is not None,
    }
    if fix is not None:
        issue["fix"] = fix
    return issue
