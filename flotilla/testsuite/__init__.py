"""Test declarations and results."""

from flotilla.testsuite.result import Outcome, Stage, SuiteReport, TestResult, Verdict
from flotilla.testsuite.test import Test, TestSuite, no_services

__all__ = [
    "Outcome",
    "Stage",
    "SuiteReport",
    "Test",
    "TestResult",
    "TestSuite",
    "Verdict",
    "no_services",
]
