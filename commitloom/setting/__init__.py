from .setting import (
    AppSettings,
    ClusteringSettings,
    ImpactSettings,
    ReviewSettings,
    SamplingSettings,
    ScanSettings,
    get_config_path,
    get_settings,
    load_settings,
    reload_settings,
)

__all__ = [
    "AppSettings",
    "ClusteringSettings",
    "ImpactSettings",
    "ReviewSettings",
    "SamplingSettings",
    "ScanSettings",
    "get_config_path",
    "get_settings",
    "load_settings",
    "reload_settings",
]
