"""
Real-world driver: catchment attributes, LSTM outputs and latent states.

Reads the tables named in the experiment config:

    data:
      attributes: attribute table (one row per catchment, partition flag)
      model_outputs: long table point_id | time | predicted | observed
      latent_states: optional, CSV (long) or .pt tensor + ids file

then runs every configured static analysis (one per subspace) plus the
temporal trajectories, and saves one report directory per analysis.

Usage:
    python -m src.experiments.camels --config configs/experiments/camels.yaml
    python -m src.experiments.camels --config configs/experiments/camels.yaml data.root=/data/camels
"""

import argparse
import logging
import sys
import traceback
from pathlib import Path
from typing import List, Optional

from omegaconf import DictConfig, OmegaConf

from src.experiments.common import build_analysis_configs, run_and_save
from src.novelty.io import load_attribute_table, load_latent_states, load_model_outputs
from src.novelty.pipeline import AnalysisReport
from src.utils.logging import log_config, setup_logging

logger = logging.getLogger(__name__)


def _resolve(root: Path, value: Optional[str]) -> Optional[Path]:
    if not value:
        return None
    path = Path(value)
    return path if path.is_absolute() else root / path


def run_experiment(
    cfg: DictConfig,
    output_dir: Optional[Path] = None,
    n_jobs: int = 1,
) -> List[AnalysisReport]:
    """Load the configured tables and run every analysis."""
    data = cfg.data
    root = Path(data.get("root", "."))
    id_column = data.get("id_column", "point_id")

    attributes_path = _resolve(root, data.attributes)
    outputs_path = _resolve(root, data.model_outputs)
    for path in (attributes_path, outputs_path):
        if not path.exists():
            raise FileNotFoundError(f"Input table not found: {path}")

    training, evaluation = load_attribute_table(
        attributes_path,
        id_column=id_column,
        partition_column=data.get("partition_column", "partition"),
        training_value=str(data.get("training_value", "training")),
        columns=list(data.columns) if data.get("columns") else None,
    )
    model_outputs = load_model_outputs(outputs_path, id_column=id_column)

    latent_states = None
    latent_path = _resolve(root, data.get("latent_states"))
    if latent_path is not None:
        latent_states = load_latent_states(
            latent_path,
            ids_path=_resolve(root, data.get("latent_ids")),
            id_column=id_column,
        )
    else:
        logger.info("No latent states configured; temporal analyses are skipped")

    corpus = cfg.get("corpus", "camels")
    configs = build_analysis_configs(cfg, corpus, list(training.names))
    output_dir = Path(output_dir or cfg.get("output_dir", f"results/{corpus}"))

    return run_and_save(
        configs,
        training,
        evaluation,
        model_outputs,
        output_dir,
        latent_states=latent_states,
        n_jobs=n_jobs,
    )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Extrapolation vs performance analyses on a catchment corpus"
    )
    parser.add_argument(
        "--config",
        type=str,
        default="configs/experiments/camels.yaml",
        help="Experiment config (YAML)",
    )
    parser.add_argument("--output-dir", type=str, default=None, help="Results directory")
    parser.add_argument("--n-jobs", type=int, default=1, help="Parallel analyses")
    parser.add_argument("--log-file", type=str, default=None, help="Optional log file")
    parser.add_argument("overrides", nargs="*", help="OmegaConf dotlist overrides")

    args = parser.parse_args()
    setup_logging(log_file=Path(args.log_file) if args.log_file else None)

    cfg = OmegaConf.merge(OmegaConf.load(args.config), OmegaConf.from_dotlist(args.overrides))
    logger.info(f"Config {args.config}:")
    log_config(logger, cfg)

    try:
        reports = run_experiment(cfg, args.output_dir, args.n_jobs)
    except Exception as e:
        logger.error(f"Experiment failed: {e}")
        logger.error(traceback.format_exc())
        return False

    return all(r.status == "ok" for r in reports)


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
