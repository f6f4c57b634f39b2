"""
Shared orchestration for the experiment drivers.

Both corpora follow the same recipe: expand the configured analyses (plus
an optional subspace sweep) into run_analysis() jobs, run them, persist
every report and log the error/warning counts of each run.
"""

import json
import logging
from pathlib import Path
from typing import List, Optional

import pandas as pd
from omegaconf import DictConfig, OmegaConf
from tqdm import tqdm

from src.novelty.pipeline import (
    AnalysisConfig,
    AnalysisReport,
    reports_to_frame,
    run_analyses,
    run_analysis,
    save_report,
)
from src.novelty.records import PointSet
from src.novelty.subspace import enumerate_subspaces

logger = logging.getLogger(__name__)


def build_analysis_configs(
    cfg: DictConfig,
    corpus: str,
    attribute_names: List[str],
) -> List[AnalysisConfig]:
    """
    Expand ``cfg.analyses`` and ``cfg.sweep`` into analysis configs.

    A sweep entry clones its ``template`` once per attribute combination
    of the requested size.
    """
    configs = [
        AnalysisConfig.from_omegaconf(entry, corpus=corpus)
        for entry in cfg.get("analyses", [])
    ]

    sweep = cfg.get("sweep")
    if sweep:
        template = OmegaConf.to_container(sweep.template, resolve=True)
        names = list(sweep.get("attributes") or attribute_names)
        for combo in enumerate_subspaces(names, int(sweep.size), sweep.get("max_subspaces")):
            entry = {
                **template,
                "name": f"{template.get('name', 'sweep')}_{'_'.join(combo)}",
                "dims": list(combo),
            }
            configs.append(AnalysisConfig.from_omegaconf(entry, corpus=corpus))

    names = [c.name for c in configs]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate analysis names in config: {names}")

    logger.info(f"{len(configs)} analyses configured for corpus '{corpus}'")
    return configs


def run_and_save(
    configs: List[AnalysisConfig],
    training: PointSet,
    evaluation: PointSet,
    model_outputs: pd.DataFrame,
    output_dir: Path,
    latent_states: Optional[pd.DataFrame] = None,
    n_jobs: int = 1,
) -> List[AnalysisReport]:
    """Run every analysis, persist the reports and a summary table."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    jobs = [(c, training, evaluation, model_outputs, latent_states) for c in configs]
    if n_jobs == 1:
        reports = [run_analysis(*job) for job in tqdm(jobs, desc="Analyses")]
    else:
        reports = run_analyses(jobs, n_jobs=n_jobs)

    for report in reports:
        save_report(report, output_dir)

    summary = reports_to_frame(reports)
    summary.to_csv(output_dir / "analysis_summary.csv", index=False)

    log_reports(reports)
    return reports


def log_reports(reports: List[AnalysisReport]) -> None:
    """Log one line per analysis with its statistic and error/warning counts."""
    n_failed = sum(r.status != "ok" for r in reports)
    logger.info("=" * 60)
    logger.info(f"{len(reports)} analyses, {n_failed} failed")
    for report in reports:
        s = report.summary()
        logger.info(
            f"  {s['name']:<32} {s['status']:<7} ρ={s['coefficient']:+.3f} "
            f"n={s['n']:<5} errors={json.dumps(s['errors'])} "
            f"warnings={json.dumps(s['warnings'])}"
        )
    logger.info("=" * 60)
