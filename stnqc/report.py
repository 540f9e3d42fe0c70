from datetime import datetime
from typing import List, Optional

import pandas as pd

from stnqc.config import OutputConfig
from stnqc.flags import FLAG_LABELS, Flag
from stnqc.pipeline import QCRunResult


def generate_summary(
    result: QCRunResult,
    out_cfg: OutputConfig,
    chart_path: Optional[str] = None,
):
    df = result.frame
    total = len(df)
    counts = df["qc_flag"].value_counts().to_dict()

    lines = []
    lines.append(f"# QC Summary – {out_cfg.network_name}")
    lines.append("")
    lines.append(f"Generated: {datetime.now().isoformat(timespec='seconds')}")
    lines.append("")
    lines.append("## Dataset")
    lines.append(f"- Observations: {total}")
    lines.append(f"- Stations: {df['station_id'].nunique()}")
    if total:
        lines.append(f"- Start: {pd.Timestamp(df['time'].min()).isoformat()}")
        lines.append(f"- End:   {pd.Timestamp(df['time'].max()).isoformat()}")
    lines.append("")

    lines.append("## Combined flag statistics")
    for flag in Flag:
        n = counts.get(int(flag), 0)
        pct = 100 * n / total if total > 0 else 0
        lines.append(f"- {FLAG_LABELS[flag]}: {n} ({pct:.1f}%)")
    lines.append("")

    lines.append("## Per-test statistics")
    lines.append("")
    lines.append("| Test | " + " | ".join(FLAG_LABELS[f] for f in Flag) + " | Not run |")
    lines.append("|---" * (len(Flag) + 2) + "|")
    for test in result.tests:
        test_counts = df[test].value_counts().to_dict()
        cells: List[str] = [str(test_counts.get(int(flag), 0)) for flag in Flag]
        cells.append(str(int(df[test].isna().sum())))
        lines.append(f"| {test} | " + " | ".join(cells) + " |")
    lines.append("")

    worst = df[df["qc_flag"] == int(Flag.FAIL)]["station_id"].value_counts().head(10)
    if not worst.empty:
        lines.append("## Stations with most failures")
        for station_id, n in worst.items():
            lines.append(f"- {station_id}: {n}")
        lines.append("")

    if result.errors:
        lines.append("## Evaluation errors")
        lines.append(f"- {len(result.errors)} rule evaluations raised structural errors.")
        for err in result.errors[:20]:
            lines.append(f"- {err.test} @ {err.station_id} {err.time}: {err.message}")
        lines.append("")

    if chart_path:
        lines.append("## Quick view")
        lines.append(f"![QC chart]({chart_path})")
        lines.append("")

    lines.append("## Notes for operator")
    lines.append("- Review flagged observations before using data in reports.")
    lines.append("- Inconclusive means there was too little data around the observation to judge it.")
    lines.append("- Buddy check failures disagree with nearby stations; check siting and sensor health.")
    lines.append("- Dip, spike and step flags indicate abrupt changes that may need confirmation.")
    lines.append("- Flatline flags usually indicate a frozen sensor or communication issue.")

    text = "\n".join(lines)

    with open(out_cfg.report_path, "w", encoding="utf-8") as f:
        f.write(text)
