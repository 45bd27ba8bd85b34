"""Commit analysis: work type inference, clustering, impact scoring, metrics, prediction."""

from .clustering import ClusteringConfig, cluster_commits, clustering_stats
from .diff import assemble_diff, summarize_diff
from .metrics import calculate_developer_metrics, calculate_monthly_activity
from .models import (
    CommitRecord,
    FileChange,
    ImpactFactors,
    ImpactResult,
    WorkType,
    WorkUnitDraft,
)
from .prediction import WorkUnitPrediction, adjust_prediction, predict_work_unit_count
from .scoring import ImpactConfig, calculate_hotspot_files, calculate_impact

__all__ = [
    "ClusteringConfig",
    "CommitRecord",
    "FileChange",
    "ImpactConfig",
    "ImpactFactors",
    "ImpactResult",
    "WorkType",
    "WorkUnitDraft",
    "WorkUnitPrediction",
    "adjust_prediction",
    "assemble_diff",
    "calculate_developer_metrics",
    "calculate_hotspot_files",
    "calculate_impact",
    "calculate_monthly_activity",
    "cluster_commits",
    "clustering_stats",
    "predict_work_unit_count",
    "summarize_diff",
]
