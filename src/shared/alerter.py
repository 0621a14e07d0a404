import logging
import time

from src.shared.database import Database
from src.shared.notifier import send_message

logger = logging.getLogger(__name__)


class HealthTracker:
    """Track errors, warnings, and health status during a workflow run.

    Usage:
        tracker = HealthTracker("copy-trader-bot")
        try:
            # ... do work ...
            tracker.add_warning("Master positions query failed")
        except Exception as e:
            tracker.add_error("MEXC", str(e))
        finally:
            tracker.finalize()
    """

    def __init__(self, workflow: str):
        self.workflow = workflow
        self.errors: list[dict] = []
        self.warnings: list[dict] = []
        self.start_time = time.time()
        self.db = Database()

    def add_error(self, service: str, message: str, impact: str = "") -> None:
        """Record an error that occurred during the run."""
        error = {"service": service, "message": message, "impact": impact}
        self.errors.append(error)
        logger.error(f"[{self.workflow}] {service}: {message}")

    def add_warning(self, message: str, service: str = "") -> None:
        """Record a warning (partial failure or degraded operation)."""
        warning = {"service": service, "message": message}
        self.warnings.append(warning)
        logger.warning(f"[{self.workflow}] {message}")

    @property
    def severity(self) -> str:
        if not self.errors:
            return "success"
        critical_keywords = ["halt", "all failed", "cannot trade"]
        for err in self.errors:
            if any(kw in err["message"].lower() for kw in critical_keywords):
                return "critical"
        if len(self.errors) >= 3:
            return "critical"
        return "warning"

    def finalize(self) -> None:
        """Log health check to DB and send an alert message if errors occurred."""
        duration = time.time() - self.start_time
        status = self.severity

        self.db.log_health_check({
            "workflow": self.workflow,
            "status": status,
            "errors": self.errors if self.errors else None,
            "warnings": self.warnings if self.warnings else None,
            "run_duration_seconds": round(duration, 2),
        })

        if self.errors:
            self._send_alert(duration)

        if status == "success":
            logger.info(f"[{self.workflow}] Completed successfully in {duration:.1f}s")

    def _send_alert(self, duration: float) -> None:
        sev = self.severity.upper()
        lines = [
            f"[ALERT] {sev}: {self.workflow}",
            f"Duration: {duration:.1f}s",
            "",
            "Errors:",
        ]
        for err in self.errors:
            line = f"- {err['service']}: {err['message']}"
            if err["impact"]:
                line += f" ({err['impact']})"
            lines.append(line)

        if self.warnings:
            lines.append("")
            lines.append("Warnings:")
            lines.extend(f"- {w['message']}" for w in self.warnings)

        send_message("\n".join(lines))
