"""Admission gate: bot heuristics and timed human verification."""

from kripa.gate.admission import AdmissionGate, GateDecision, GateReason, VerificationRegistry

__all__ = ["AdmissionGate", "GateDecision", "GateReason", "VerificationRegistry"]
