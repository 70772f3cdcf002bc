import argparse
import json
import os

import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns


# --- Tables ---
def grouped_frame(report):
    rows = []
    for group_name, buckets in report.get("grouped", {}).items():
        for bucket, vals in buckets.items():
            rows.append({"Grouping": group_name, "Bucket": bucket, "Samples": vals["samples"],
                         "ECE": vals["ece"], "Brier": vals["brier"]})
    return pd.DataFrame(rows, columns=["Grouping", "Bucket", "Samples", "ECE", "Brier"])


def reliability_frame(report):
    rows = []
    for stage, table in report.get("reliability", {}).items():
        for b in table:
            if b["n"]:
                rows.append({"Stage": stage.capitalize(), "Confidence": b["mean_confidence"],
                             "Observed": b["mean_label"], "n": b["n"]})
    return pd.DataFrame(rows, columns=["Stage", "Confidence", "Observed", "n"])


def stability_frame(stability):
    rows = []
    for img in stability.get("images", []):
        for itype, entry in img.get("issue_stability", {}).items():
            if entry.get("severity_score_range") is None:
                continue
            rows.append({"Image": img["image"], "Issue": itype,
                         "Range": entry["severity_score_range"],
                         "FlipRate": entry["appearance_flip_rate"]})
    return pd.DataFrame(rows, columns=["Image", "Issue", "Range", "FlipRate"])


# --- Main ---
def main():
    ap = argparse.ArgumentParser(description="Plot calibration (and optional stability) reports.")
    ap.add_argument("--calibration", default="calibration_report.json")
    ap.add_argument("--stability", default="", help="Optional stability_report.json")
    ap.add_argument("--out-dir", default="plots")
    ap.add_argument("--budget", type=float, default=0.2, help="Severity-range budget line")
    args = ap.parse_args()

    with open(args.calibration, "r", encoding="utf-8") as f:
        report = json.load(f)
    os.makedirs(args.out_dir, exist_ok=True)

    gdf = grouped_frame(report)
    gdf.to_csv(os.path.join(args.out_dir, "grouped_metrics.csv"), index=False)
    print(f"Grouped metrics saved to {args.out_dir}/grouped_metrics.csv")

    sns.set_context("paper", font_scale=1.5)
    sns.set_style("ticks")
    palette = {"Raw": "#E64B35", "Calibrated": "#4DBBD5"}

    fig, axes = plt.subplots(1, 2, figsize=(12, 6), dpi=300)

    # Reliability diagram
    rdf = reliability_frame(report)
    axes[0].plot([0, 1], [0, 1], linestyle="--", color="gray", linewidth=1)
    if not rdf.empty:
        sns.lineplot(data=rdf, x="Confidence", y="Observed", hue="Stage", palette=palette,
                     marker="o", ax=axes[0])
    metrics = report.get("metrics", {})
    axes[0].set_title(
        f"Reliability (ECE raw={metrics.get('raw', {}).get('ece')}, "
        f"cal={metrics.get('calibrated', {}).get('ece')})",
        fontweight="bold",
    )
    axes[0].set_xlim(0, 1)
    axes[0].set_ylim(0, 1)
    axes[0].grid(linestyle="--", alpha=0.3)

    # Per-bucket calibrated ECE
    edf = gdf.dropna(subset=["ECE"])
    if not edf.empty:
        sns.barplot(data=edf, x="Bucket", y="ECE", hue="Grouping", ax=axes[1])
        axes[1].tick_params(axis="x", rotation=45)
    axes[1].set_title("Calibrated ECE by bucket (Lower is Better)", fontweight="bold")
    axes[1].set_xlabel("")
    axes[1].grid(axis="y", linestyle="--", alpha=0.3)

    sns.despine()
    plt.tight_layout()
    out = os.path.join(args.out_dir, "calibration_plot.png")
    plt.savefig(out, bbox_inches="tight")
    plt.close(fig)
    print(f"Plot saved to {out}")

    if args.stability:
        with open(args.stability, "r", encoding="utf-8") as f:
            sdf = stability_frame(json.load(f))
        if sdf.empty:
            print("No severity ranges in stability report.")
            return
        fig, ax = plt.subplots(figsize=(8, 5), dpi=300)
        sns.stripplot(data=sdf, x="Issue", y="Range", hue="Image", ax=ax, size=7)
        ax.axhline(args.budget, color="#E64B35", linestyle="--", linewidth=1, label="budget")
        ax.set_title("Severity score range under perturbation", fontweight="bold")
        ax.grid(axis="y", linestyle="--", alpha=0.3)
        sns.despine()
        plt.tight_layout()
        out = os.path.join(args.out_dir, "stability_plot.png")
        plt.savefig(out, bbox_inches="tight")
        plt.close(fig)
        print(f"Plot saved to {out}")

    # Summary
    print("\n--- Summary ---")
    print(pd.DataFrame(metrics).T.to_string())


if __name__ == "__main__":
    main()
