"""Request-scoped access to the engine owned by the running app."""

from fastapi import Request

from eduverse_engine.certificates.eligibility import CertificateEligibilityEngine
from eduverse_engine.engine import EduverseEngine
from eduverse_engine.licensing.state import LicenseStateMachine
from eduverse_engine.progress.aggregator import ProgressAggregator


def get_engine(request: Request) -> EduverseEngine:
    return request.app.state.engine


def get_license_machine(request: Request) -> LicenseStateMachine:
    return get_engine(request).licenses


def get_progress_aggregator(request: Request) -> ProgressAggregator:
    return get_engine(request).progress


def get_certificate_engine(request: Request) -> CertificateEligibilityEngine:
    return get_engine(request).certificates
