from __future__ import annotations

from ..models.processing_result import RunSummary

"""SUMMARY line rendering.

Format:
SUMMARY jobs={n} completed={c} failed={f} rows={rows} skipped={s}
elapsed_sec={elapsed} throughput_rps={throughput}
"""


def _format_number(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        # avoid scientific notation for tiny values
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return str(value)


def render_summary_line(result: RunSummary) -> str:
    """Render the SUMMARY line for one run.

    Examples:
        >>> from datetime import datetime, timezone
        >>> start = datetime(2024, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
        >>> end = datetime(2024, 1, 1, 10, 0, 2, tzinfo=timezone.utc)
        >>> result = RunSummary(
        ...     completed_jobs=1, failed_jobs=0, total_records=1000,
        ...     skipped_records=3, start_time=start, end_time=end,
        ...     elapsed_seconds=2.0, throughput_rows_per_sec=500.0
        ... )
        >>> render_summary_line(result)
        'SUMMARY jobs=1 completed=1 failed=0 rows=1000 skipped=3 elapsed_sec=2 throughput_rps=500'
    """
    return (
        f"SUMMARY jobs={result.completed_jobs + result.failed_jobs} "
        f"completed={result.completed_jobs} "
        f"failed={result.failed_jobs} "
        f"rows={result.total_records} "
        f"skipped={result.skipped_records} "
        f"elapsed_sec={_format_number(result.elapsed_seconds)} "
        f"throughput_rps={_format_number(result.throughput_rows_per_sec)}"
    )
