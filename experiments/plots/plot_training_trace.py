from __future__ import annotations

import argparse
import polars as pl
import matplotlib.pyplot as plt


def batch_summary(df: pl.DataFrame) -> pl.DataFrame:
    """One row per mini-batch: starting cost, CG iterations and damping after the update."""
    starts = (
        df.filter(pl.col("event") == "cg_start")
        .with_row_index("update")
        .select(["update", "epoch", "batch", "objective"])
    )
    cg = (
        df.filter(pl.col("event") == "cg_iteration")
        .group_by(["epoch", "batch"], maintain_order=True)
        .agg(pl.col("cg_iteration").max().alias("cg_iterations"))
    )
    damping = df.filter(pl.col("event") == "damping").select(["trust", "damping"]).with_row_index("update")
    out = starts.join(cg, on=["epoch", "batch"], how="left").join(damping, on="update", how="left")
    return out.sort("update")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--input", type=str, default="logs/hf_trace.csv")
    parser.add_argument("--run_id", type=str, default=None)
    parser.add_argument("--out", type=str, default=None)
    args = parser.parse_args()

    df = pl.read_csv(args.input)
    if args.run_id is not None:
        df = df.filter(pl.col("run_id") == args.run_id)
    summary = batch_summary(df)

    fig, (ax1, ax3) = plt.subplots(2, 1, figsize=(8, 6), sharex=True)
    ax1.plot(summary["update"], summary["objective"], label="mini-batch cost", color="tab:blue")
    ax1.set_ylabel("cost at CG start")
    ax2 = ax1.twinx()
    ax2.plot(summary["update"], summary["damping"], label="damping", color="tab:orange", alpha=0.7)
    ax2.set_yscale("log")
    ax2.set_ylabel("damping")
    lines1, labels1 = ax1.get_legend_handles_labels()
    lines2, labels2 = ax2.get_legend_handles_labels()
    ax1.legend(lines1 + lines2, labels1 + labels2, loc="upper right")

    ax3.bar(summary["update"], summary["cg_iterations"].fill_null(0), color="tab:green", alpha=0.6)
    ax3.set_xlabel("update")
    ax3.set_ylabel("CG iterations")
    fig.tight_layout()
    if args.out:
        fig.savefig(args.out, dpi=150)
    else:
        plt.show()


if __name__ == "__main__":
    main()
