"""Probe model, expectation builders and the catalog."""

from .models import Outcome, Probe, ProbeContext, ProbeError, ProbeGroup, ProbeResult, ProbeState

__all__ = ["Outcome", "Probe", "ProbeContext", "ProbeError", "ProbeGroup", "ProbeResult", "ProbeState"]
