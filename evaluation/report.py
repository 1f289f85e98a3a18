"""Accumulation and presentation of evaluation metrics across sessions."""

from dataclasses import dataclass, asdict

from models import Metrics


@dataclass(frozen=True)
class ReportRow:
    """One (session, strategy) line of the evaluation report."""
    session_id: str
    strategy_name: str
    ground_truth_count: int
    metrics: Metrics

    def to_dict(self) -> dict:
        data = asdict(self)
        data.update(data.pop('metrics'))
        return data


class MetricsAggregator:
    """
    Explicit accumulator for evaluation results.

    Each evaluation run adds its own rows; nothing is kept in module state,
    so independent aggregators never influence each other.
    """

    def __init__(self):
        self._rows: list[ReportRow] = []

    def add(self, session_id: str, strategy_name: str, metrics: Metrics, ground_truth_count: int) -> ReportRow:
        row = ReportRow(session_id, strategy_name, ground_truth_count, metrics)
        self._rows.append(row)
        return row

    @property
    def rows(self) -> list[ReportRow]:
        return list(self._rows)

    @property
    def strategies(self) -> list[str]:
        """Strategy names in first-seen order."""
        seen = []
        for row in self._rows:
            if row.strategy_name not in seen:
                seen.append(row.strategy_name)
        return seen

    def totals(self, strategy_name: str) -> Metrics:
        """Micro-averaged metrics of one strategy over all its sessions."""
        rows = [row for row in self._rows if row.strategy_name == strategy_name]
        return Metrics.from_counts(
            sum(row.metrics.true_positive for row in rows),
            sum(row.metrics.false_positive for row in rows),
            sum(row.metrics.false_negative for row in rows),
        )


_HEADER = ("Session", "Strategy", "GT", "Detected", "TP", "FP", "FN", "Precision", "Recall", "F1")


def _cells(session: str, strategy: str, ground_truth: str, metrics: Metrics) -> tuple:
    return (
        session, strategy, ground_truth,
        str(metrics.detected), str(metrics.true_positive), str(metrics.false_positive),
        str(metrics.false_negative),
        f"{metrics.precision:.1%}", f"{metrics.recall:.1%}", f"{metrics.f1:.1%}",
    )


def format_report(rows: list[ReportRow], aggregator: MetricsAggregator = None) -> str:
    """
    Render rows as a fixed-width text table.

    Args:
        rows: Report rows, one per (session, strategy)
        aggregator: When given, a TOTAL line per strategy is appended

    Returns:
        Table text
    """
    lines = [_cells(r.session_id, r.strategy_name, str(r.ground_truth_count), r.metrics) for r in rows]
    if aggregator is not None:
        for strategy in aggregator.strategies:
            gt_total = sum(r.ground_truth_count for r in aggregator.rows if r.strategy_name == strategy)
            lines.append(_cells("TOTAL", strategy, str(gt_total), aggregator.totals(strategy)))

    table = [_HEADER] + lines
    widths = [max(len(line[i]) for line in table) for i in range(len(_HEADER))]
    rendered = ["  ".join(cell.ljust(width) for cell, width in zip(line, widths)).rstrip() for line in table]
    rendered.insert(1, "  ".join("-" * width for width in widths))
    return "\n".join(rendered)
