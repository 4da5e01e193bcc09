from __future__ import annotations

from dataclasses import dataclass, field

from rich.console import Console

from runsheetcapture.core.config import AnalysisSettings, AppPaths, load_settings


@dataclass(slots=True)
class CLIContext:
    paths: AppPaths
    console: Console
    settings: AnalysisSettings = field(default_factory=load_settings)
