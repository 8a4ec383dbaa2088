"""
Integration points for external services.

Provides:
- AnalysisStore: optional persistence of finished analyses
"""

from .analysis_store import AnalysisStore, analysis_key

__all__ = ["AnalysisStore", "analysis_key"]
