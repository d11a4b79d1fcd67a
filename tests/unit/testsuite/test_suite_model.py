"""Unit tests for TestSuite declarations, verdicts and reports."""

from __future__ import annotations

import pytest

from flotilla.errors import InvalidSuiteError
from flotilla.testsuite.result import Outcome, Stage, SuiteReport, TestResult, Verdict
from flotilla.testsuite.test import Test, TestSuite, no_services


class TestSuiteDeclaration:
    def test_decorator_registers_tests(self):
        suite = TestSuite("kv", network_width_bits=4)

        @suite.test(timeout=30)
        async def replication(config):
            """Writes reach every replica."""

        @suite.test("custom-name", network_width_bits=6)
        def other(config):
            return True

        assert suite.names == ["custom-name", "replication"]
        assert suite["replication"].timeout == 30
        assert suite["replication"].description == "Writes reach every replica."
        assert suite["replication"].initializer is no_services
        assert suite.width_for(suite["custom-name"]) == 6
        assert suite.width_for(suite["replication"]) == 4

    def test_duplicate_names_rejected(self):
        suite = TestSuite()
        suite.add(Test("a", lambda c: True))

        with pytest.raises(InvalidSuiteError):
            suite.add(Test("a", lambda c: True))

    def test_mapping_keys_must_match_names(self):
        with pytest.raises(InvalidSuiteError):
            TestSuite(tests={"a": Test("b", lambda c: True)})

    @pytest.mark.parametrize("width", [0, 25, True, "8"])
    def test_invalid_width(self, width):
        with pytest.raises(InvalidSuiteError):
            TestSuite(network_width_bits=width)
        with pytest.raises(InvalidSuiteError):
            Test("t", lambda c: True, network_width_bits=width)

    def test_invalid_test_fields(self):
        with pytest.raises(InvalidSuiteError):
            Test("", lambda c: True)
        with pytest.raises(InvalidSuiteError):
            Test("t", lambda c: True, timeout=0)
        with pytest.raises(InvalidSuiteError):
            Test("t", "not callable")  # type: ignore[arg-type]

    def test_empty_suite_fails_validation(self):
        with pytest.raises(InvalidSuiteError):
            TestSuite("empty").validate()

    def test_iteration_is_sorted(self):
        suite = TestSuite(tests=[Test(n, lambda c: True) for n in ("b", "c", "a")])

        assert [t.name for t in suite] == ["a", "b", "c"]
        assert "b" in suite
        assert len(suite) == 3

    def test_metadata(self):
        suite = TestSuite("kv", network_width_bits=4, tests=[Test("a", lambda c: True, timeout=5)])

        assert suite.metadata() == {
            "name": "kv",
            "network_width_bits": 4,
            "tests": {"a": {"network_width_bits": 4, "timeout": 5, "description": ""}},
        }


class TestVerdict:
    @pytest.mark.parametrize("value", [None, True, Verdict.passed()])
    def test_passing_values(self, value):
        assert Verdict.coerce(value).ok

    def test_false_fails(self):
        assert Verdict.coerce(False) == Verdict(False, "test body returned False")

    def test_other_values_rejected(self):
        with pytest.raises(TypeError):
            Verdict.coerce(1)


class TestReport:
    def test_counts_and_success(self):
        report = SuiteReport(
            "s",
            [
                TestResult("b", Outcome.FAILED, Stage.EXECUTION, "nope", "assertion_failed"),
                TestResult("a", Outcome.PASSED),
                TestResult.skipped("c"),
            ],
        )

        assert [r.name for r in report.results] == ["a", "b", "c"]
        assert report.counts["passed"] == 1
        assert report.counts["failed"] == 1
        assert report.counts["skipped"] == 1
        assert report.counts["timed_out"] == 0
        assert not report.succeeded
        assert report["c"].cancelled
        with pytest.raises(KeyError):
            report["zzz"]

    def test_cancelled_report_never_succeeds(self):
        report = SuiteReport("s", [TestResult("a", Outcome.PASSED)], cancelled=True)

        assert not report.succeeded

    def test_result_rendering(self):
        result = TestResult("a", Outcome.TIMED_OUT, Stage.EXECUTION, "exceeded 1s deadline during execution")

        assert str(result) == "a: TIMED_OUT(execution) exceeded 1s deadline during execution"
        assert result.to_dict()["stage"] == "execution"
        assert str(TestResult("b", Outcome.PASSED)) == "b: PASSED"
