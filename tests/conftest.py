"""
Pytest configuration and shared fixtures.

Provides a synthetic pollination experiment: negative-binomial counts for
2 compatibility genotypes x 2 pollen treatments x 2 stages x 3 replicates,
with known differentially expressed genes and a block of barely expressed
genes that the default CPM filter removes.
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from compatde.core.countmatrix import CountMatrix

N_REPLICATES = 3
N_DE_UP = 20
N_DE_DOWN = 20
N_LOW = 30


def generate_sample_metadata(n_replicates: int = N_REPLICATES) -> pd.DataFrame:
    """Sample sheet for the full factorial design, stage-major order."""
    rows = []
    for stage in ["stage1", "stage2"]:
        for compatibility, c in [("compatible", "C"), ("incompatible", "I")]:
            for pollen, p in [("unpollinated", "U"), ("pollinated", "P")]:
                for rep in range(1, n_replicates + 1):
                    rows.append({
                        "sample": f"{c}{p}_{stage[-1]}_{rep}",
                        "compatibility": compatibility,
                        "pollen": pollen,
                        "stage": stage,
                    })
    return pd.DataFrame(rows)


def generate_synthetic_counts(
    n_genes: int = 300,
    n_replicates: int = N_REPLICATES,
    fold_change: float = 4.0,
    dispersion: float = 0.05,
    seed: int = 42,
) -> tuple[CountMatrix, dict[str, list[str]]]:
    """
    Generate a negative-binomial count matrix with known DE genes.

    Args:
        n_genes: Number of genes
        n_replicates: Replicates per group
        fold_change: Effect of pollination in compatible samples
        dispersion: NB dispersion (variance = mu + dispersion * mu^2)
        seed: Random seed for reproducibility

    Returns:
        (CountMatrix with metadata, {"up": [...], "down": [...], "low": [...]})

    Design:
        - Baseline means log-normal around e^5 reads
        - The first N_DE_UP genes go up, the next N_DE_DOWN go down in
          compatible.pollinated relative to every other group
        - The last N_LOW genes have a mean of 0.02 reads
        - Library sizes vary by up to +-30% across samples
    """
    rng = np.random.RandomState(seed)

    sheet = generate_sample_metadata(n_replicates)
    n_samples = len(sheet)

    base = rng.lognormal(mean=5, sigma=1.2, size=n_genes)
    base[-N_LOW:] = 0.02

    mu = np.tile(base[:, None], (1, n_samples))
    responding = ((sheet["compatibility"] == "compatible") & (sheet["pollen"] == "pollinated")).to_numpy()
    mu[:N_DE_UP, responding] *= fold_change
    mu[N_DE_UP:N_DE_UP + N_DE_DOWN, responding] /= fold_change

    depth = rng.uniform(0.7, 1.3, size=n_samples)
    mu = mu * depth[None, :]

    size = 1.0 / dispersion
    counts = rng.negative_binomial(size, size / (size + mu)).astype(float)

    gene_ids = [f"AT{i // 100 + 1}G{(i % 100) * 10 + 10:05d}" for i in range(n_genes)]
    sample_ids = pd.Index(sheet["sample"])
    metadata = sheet.set_index("sample")
    metadata.index.name = None

    matrix = CountMatrix(
        data=counts,
        feature_ids=pd.Index(gene_ids),
        sample_ids=sample_ids,
        sample_metadata=metadata,
    )
    truth = {
        "up": gene_ids[:N_DE_UP],
        "down": gene_ids[N_DE_UP:N_DE_UP + N_DE_DOWN],
        "low": gene_ids[-N_LOW:],
    }
    return matrix, truth


@pytest.fixture
def experiment():
    """(CountMatrix, truth) for the synthetic experiment."""
    return generate_synthetic_counts()


@pytest.fixture
def count_matrix(experiment):
    return experiment[0]


@pytest.fixture
def truth(experiment):
    return experiment[1]


@pytest.fixture
def counts_file(tmp_path, count_matrix):
    """Count matrix written the way R's write.table does it (no gene-id header field)."""
    path = tmp_path / "counts.txt"
    df = count_matrix.to_frame()
    # Fractional values as produced by transcript quantifiers
    df = df + 0.25
    df.to_csv(path, sep=" ", header=True, index=True, float_format="%.2f")
    # Drop the empty first header field so the header is one field short
    lines = path.read_text().splitlines()
    lines[0] = lines[0].lstrip()
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def metadata_file(tmp_path, count_matrix):
    """Sample sheet with a sample column, rows in reverse order."""
    path = tmp_path / "samples.csv"
    sheet = count_matrix.sample_metadata.copy()
    sheet.insert(0, "sample", sheet.index)
    sheet.iloc[::-1].to_csv(path, index=False)
    return path


@pytest.fixture
def analysis_config_dict(counts_file, metadata_file, tmp_path):
    """Config mapping for a two-comparison run."""
    return {
        "counts": str(counts_file),
        "metadata": str(metadata_file),
        "sample_column": "sample",
        "factors": ["compatibility", "pollen"],
        "filter": {"min_cpm": 0.5, "min_samples": 6},
        "mds": {"top": 100, "color_by": "compatibility", "shape_by": "stage"},
        "comparisons": [
            {
                "name": "stage1",
                "subset": {"stage": "stage1"},
                "contrasts": {
                    "pollination": "compatible.pollinated - compatible.unpollinated",
                    "incompatibility": "incompatible.pollinated - compatible.pollinated",
                },
            },
            {
                "name": "all_stages",
                "factors": ["compatibility", "pollen", "stage"],
                "contrasts": [
                    "compatible.pollinated.stage2 - compatible.unpollinated.stage2",
                ],
            },
        ],
        "output": str(tmp_path / "results"),
    }
