"""Classify agent CLI screens into session states."""

from .base import DETECTORS, Detection, Detector, get_detector, run_detector

__all__ = ["DETECTORS", "Detection", "Detector", "get_detector", "run_detector"]
