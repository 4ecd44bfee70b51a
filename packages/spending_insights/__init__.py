"""Public interface for the ``spending_insights`` package.

This module exposes the package's API functions and public models/types as the
stable import surface. There is no runtime logic here, only symbol re-exports.
"""

from .aggregate import AnalysisSnapshot, aggregate, build_insights_summary, make_snapshot, move_merchant
from .api import (
    analysis_response,
    analyze_csv_files,
    analyze_response,
    analyze_transactions,
    regenerate_insights,
    regenerate_insights_response,
    review_story,
)
from .categories import CATEGORY_VOCABULARY, OTHER, REFUNDS
from .config import Settings, load_settings
from .flows import FlowKind, classify_flow, split_flows
from .gateway import LLMGateway, create_gateway
from .models import (
    Aggregate,
    AnalysisResult,
    CategoryAggregate,
    FlowTotals,
    Insights,
    ItemKind,
    LineItem,
    MerchantTotal,
    RawTransaction,
    RequestSummary,
)
from .normalize import build_line_items, normalize_merchant
from .reconcile import CategorizationReconciler

__all__ = [
    # API
    "analyze_transactions",
    "analyze_csv_files",
    "analysis_response",
    "analyze_response",
    "regenerate_insights",
    "regenerate_insights_response",
    "review_story",
    # Pipeline stages
    "classify_flow",
    "split_flows",
    "normalize_merchant",
    "build_line_items",
    "CategorizationReconciler",
    "aggregate",
    "build_insights_summary",
    "AnalysisSnapshot",
    "make_snapshot",
    "move_merchant",
    # Configuration and gateway
    "Settings",
    "load_settings",
    "LLMGateway",
    "create_gateway",
    # Models and vocabulary
    "CATEGORY_VOCABULARY",
    "OTHER",
    "REFUNDS",
    "FlowKind",
    "FlowTotals",
    "ItemKind",
    "RawTransaction",
    "LineItem",
    "MerchantTotal",
    "CategoryAggregate",
    "RequestSummary",
    "Aggregate",
    "Insights",
    "AnalysisResult",
]
