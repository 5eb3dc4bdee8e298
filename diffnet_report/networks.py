"""Per-condition association networks around differentially connected genes.

The connectivity test reports which genes change connectivity; this module
shows how. For each stratum it builds an undirected association network per
condition, keeps edges whose absolute association score passes a threshold,
and summarizes, for each gene of interest:
  - degree in the control and treatment networks
  - neighbours gained (treatment only), lost (control only), and shared

Both networks are restricted to the genes of interest and their first
neighbours and written as GraphML for inspection in external tools.
"""

import logging
from pathlib import Path

import networkx as nx
import numpy as np
import pandas as pd

from .reshape import ConditionMatrices
from .utils.io import safe_name
from .utils.stats import association_scores

log = logging.getLogger(__name__)


# ── NetworkX graph construction ───────────────────────────────────────────────

def construct_nx_graph(
    scores: np.ndarray,
    probes: list[str],
    threshold: float = 0.5,
) -> nx.Graph:
    """Build an undirected NetworkX graph from an association score matrix.

    Every probe becomes a node, including isolated ones. An edge joins two
    probes when their absolute association score is at least threshold.

    Args:
        scores: Symmetric (n_probes × n_probes) association matrix.
        probes: Probe IDs in matrix order.
        threshold: Minimum |score| for an edge.

    Returns:
        Undirected graph with 'weight' (the signed score) edge attributes.
    """
    G = nx.Graph()
    G.add_nodes_from(probes)
    rows, cols = np.nonzero(np.triu(np.abs(scores) >= threshold, k=1))
    for i, j in zip(rows, cols):
        G.add_edge(probes[i], probes[j], weight=float(scores[i, j]))
    return G


def ego_subgraph(G: nx.Graph, genes: list[str]) -> nx.Graph:
    """Restrict a graph to the given genes and their first neighbours."""
    keep = set()
    for gene in genes:
        if gene in G:
            keep.add(gene)
            keep.update(G.neighbors(gene))
    return G.subgraph(keep).copy()


# ── Rewiring summary ──────────────────────────────────────────────────────────

def network_summary(
    G_control: nx.Graph,
    G_treatment: nx.Graph,
    genes: list[str],
) -> pd.DataFrame:
    """Per-gene degree and neighbour turnover between the two networks.

    Args:
        G_control: Control association network.
        G_treatment: Treatment association network.
        genes: Genes to summarize.

    Returns:
        DataFrame indexed by probe with columns 'degree_control',
        'degree_treatment', 'n_neighbours_gained', 'n_neighbours_lost',
        'n_neighbours_shared'.
    """
    records = []
    for gene in genes:
        nb_control = set(G_control.neighbors(gene)) if gene in G_control else set()
        nb_treatment = set(G_treatment.neighbors(gene)) if gene in G_treatment else set()
        records.append({
            "probe": gene,
            "degree_control": len(nb_control),
            "degree_treatment": len(nb_treatment),
            "n_neighbours_gained": len(nb_treatment - nb_control),
            "n_neighbours_lost": len(nb_control - nb_treatment),
            "n_neighbours_shared": len(nb_control & nb_treatment),
        })
    return pd.DataFrame(records, columns=[
        "probe", "degree_control", "degree_treatment",
        "n_neighbours_gained", "n_neighbours_lost", "n_neighbours_shared",
    ]).set_index("probe")


def export_networks(
    matrices: ConditionMatrices,
    genes: list[str],
    output_dir: str | Path,
    scores: str = "cor",
    threshold: float = 0.5,
    ncom: int = 3,
    rho: float = 10.0,
) -> pd.DataFrame:
    """Write control/treatment GraphML networks for one stratum.

    Files: network_<stratum>_control.graphml and
    network_<stratum>_treatment.graphml in output_dir.

    Args:
        matrices: Control/treatment matrices for the stratum.
        genes: Genes of interest (e.g. significant probes).
        output_dir: Output directory.
        scores: Association score method.
        threshold: Minimum |score| for an edge.
        ncom: Components for 'PC' and 'PLS'.
        rho: Ridge penalty for 'RR'.

    Returns:
        network_summary() table for the genes.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    probes = matrices.probes

    graphs = {}
    for condition, mat in (("control", matrices.control), ("treatment", matrices.treatment)):
        S = association_scores(mat.to_numpy(dtype=float), scores, ncom=ncom, rho=rho)
        G = construct_nx_graph(S, probes, threshold=threshold)
        graphs[condition] = G
        sub = ego_subgraph(G, genes)
        path = output_dir / f"network_{safe_name(matrices.stratum)}_{condition}.graphml"
        nx.write_graphml(sub, path)
        log.info("[%s] %s network: %d nodes, %d edges → %s", matrices.stratum,
                 condition, sub.number_of_nodes(), sub.number_of_edges(), path)

    return network_summary(graphs["control"], graphs["treatment"], genes)
