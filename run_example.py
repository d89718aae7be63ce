import logging
import multiprocessing
import time
from pathlib import Path

import numpy as np
import polars as pl
from tomli_w import dump as tomli_w_dump

from factor_gsea import EnrichmentPipeline

EXAMPLE_DIR = Path("example")


def write_example_inputs(example_dir: Path, seed: int = 0):
    """Simulate a small factor model with two enriched gene sets and write its inputs."""
    rng = np.random.default_rng(seed)
    n_samples, n_features, n_factors = 60, 500, 4
    features = [f"GENE{i:04d}" for i in range(n_features)]

    weights = rng.normal(scale=0.5, size=(n_features, n_factors))
    weights[:25, 0] += 1.5   # pathway_000 loads positively on Factor1
    weights[25:50, 1] -= 1.5  # pathway_001 loads negatively on Factor2
    factor_names = [f"Factor{k + 1}" for k in range(n_factors)]
    weights_df = pl.DataFrame(weights, schema=factor_names, orient="row").insert_column(
        0, pl.Series("gene", features)
    )
    weights_df.write_csv(example_dir / "weights.tsv", separator='\t')

    with open(example_dir / "pathways.gmt", 'w') as f:
        for k in range(20):
            members = features[k * 25:(k + 1) * 25]
            f.write("\t".join([f"pathway_{k:03d}", "simulated"] + members) + "\n")

    latent = rng.normal(size=(n_samples, n_factors))
    data = latent @ weights.T + rng.normal(size=(n_samples, n_features))
    data_df = pl.DataFrame(data, schema=features, orient="row").insert_column(
        0, pl.Series("sample", [f"S{i:03d}" for i in range(n_samples)])
    )
    data_df.write_csv(example_dir / "data.tsv", separator='\t')

    config = {
        'input': {
            'weights_file': str(example_dir / "weights.tsv"),
            'feature_sets_file': str(example_dir / "pathways.gmt"),
            'data_file': str(example_dir / "data.tsv")
        },
        'output': {
            'output_dir': "results"
        },
        'analysis': {
            'factors': "all",
            'sign': "all",
            'set_statistic': "mean.diff",
            'statistical_test': "cor.adj.parametric",
            'alpha': 0.1,
            'min_size': 10,
            'num_threads': 2
        }
    }
    config_path = example_dir / "config.toml"
    with open(config_path, 'wb') as f:
        tomli_w_dump(config, f)
    return config_path


def run_pipeline():
    # Configure logging to file only for debug messages, console for info and above
    # This keeps the progress bar clean by not printing debug messages to console
    log_dir = Path("results/logs")
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / f"pipeline_{time.strftime('%Y%m%d-%H%M%S')}.log")
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.INFO)  # Only INFO and above go to console

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')
    file_handler.setFormatter(formatter)
    console_handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Remove any existing handlers to avoid duplicates
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    EXAMPLE_DIR.mkdir(parents=True, exist_ok=True)
    config_path = write_example_inputs(EXAMPLE_DIR)
    print(f"Using config file: {config_path.absolute()}")

    try:
        pipeline = EnrichmentPipeline(config_path)
        result = pipeline.run()
        pipeline.save_results()

        for factor in result.factors:
            print(f"{factor}: {', '.join(result.significant_pathways[factor]) or 'no significant pathways'}")
        print("Pipeline execution completed successfully!")
    except Exception:
        logging.exception("Error running the pipeline")
        raise


if __name__ == "__main__":
    # This is required on macOS for multiprocessing to work properly
    multiprocessing.freeze_support()
    run_pipeline()
