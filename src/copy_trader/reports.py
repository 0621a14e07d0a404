from src.shared.models import BatchReport, TradeResult


def _fmt_price(value) -> str:
    if value is None:
        return "-"
    return f"{value:.10f}".rstrip("0").rstrip(".")


def format_result_line(result: TradeResult) -> str:
    latency = f"{result.latency_ms}ms" if result.latency_ms is not None else "-"
    if result.success:
        parts = [f"OK {result.account_name}"]
        if result.executed_price is not None:
            parts.append(f"@ {_fmt_price(result.executed_price)}")
        if result.executed_volume is not None:
            parts.append(f"vol {result.executed_volume:g}")
        if result.leverage is not None:
            parts.append(f"x{result.leverage}")
        if result.message and result.message != "ok":
            parts.append(f"({result.message})")
        parts.append(latency)
        return " ".join(parts)
    mark = "SKIP" if result.skipped else "FAIL"
    return f"{mark} {result.account_name}: {result.message} {latency}"


def format_batch_report(report: BatchReport, title: str = None) -> str:
    """Plain-text batch report: header, latency, success count, one line per account."""
    lines = [
        title or report.title or "Batch",
        f"Total: {report.total_latency_ms}ms",
        f"Success: {report.success_count}/{len(report.results)}",
    ]
    if report.results:
        lines.append("")
        lines.extend(format_result_line(r) for r in report.results)
    return "\n".join(lines)
