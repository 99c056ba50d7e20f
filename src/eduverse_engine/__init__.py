"""Eduverse-Engine: reconciliation engine for course licenses, progress and certificates."""

from eduverse_engine.client import EduverseClient
from eduverse_engine.engine import EduverseEngine
from eduverse_engine.licensing.pricing import calculate_license_price, format_license_expiry
from eduverse_engine.licensing.state import compute_license_status
from eduverse_engine.progress.aggregator import compute_course_progress, next_incomplete_section

__all__ = [
    "EduverseClient",
    "EduverseEngine",
    "calculate_license_price",
    "compute_course_progress",
    "compute_license_status",
    "format_license_expiry",
    "next_incomplete_section",
]
__version__ = "0.1.0"
