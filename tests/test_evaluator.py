"""Unit tests for score averaging and the AccuracyEvaluator."""

from __future__ import annotations

import logging

import pytest

from conftest import FakeRunner

from dynfix.errors import ConfigurationError, EngineError
from dynfix.quantize.evaluator import AccuracyEvaluator, ScoreAccumulator, run_forward_batches


def _batch_series(values):
    def score_fn(description, batch):
        return [values[batch % len(values)], 0.5]

    return score_fn


class TestScoreAccumulator:
    def test_first_batch_initialises_then_sums(self):
        acc = ScoreAccumulator()
        acc.add([1.0, 2.0], loss=0.5)
        acc.add([3.0, 4.0], loss=1.5)
        result = acc.mean(2)
        assert result.mean_scores == [2.0, 3.0]
        assert result.mean_loss == pytest.approx(1.0)

    def test_output_count_change_is_engine_error(self):
        acc = ScoreAccumulator()
        acc.add([1.0, 2.0], loss=0.0)
        with pytest.raises(EngineError):
            acc.add([1.0], loss=0.0)

    def test_zero_iterations_rejected(self):
        with pytest.raises(ConfigurationError):
            ScoreAccumulator().mean(0)


class TestAccuracyEvaluator:
    def test_single_iteration_is_raw_score(self, scenario_net):
        runner = FakeRunner(score_fn=_batch_series([0.73]))
        assert AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", iterations=1) == pytest.approx(0.73)

    def test_identical_batches_average_to_single_value(self, scenario_net):
        runner = FakeRunner(score_fn=_batch_series([0.61]))
        assert AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", iterations=7) == pytest.approx(0.61)

    def test_mean_over_batches(self, scenario_net):
        runner = FakeRunner(score_fn=_batch_series([0.2, 0.4, 0.9]))
        assert AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", iterations=3) == pytest.approx(0.5)

    def test_designated_score_index(self, scenario_net):
        runner = FakeRunner(score_fn=_batch_series([0.2]))
        assert AccuracyEvaluator(runner, score_index=1).evaluate(scenario_net, "w.pt", 2) == pytest.approx(0.5)

    def test_score_index_out_of_range(self, scenario_net):
        runner = FakeRunner(score_fn=_batch_series([0.2]))
        with pytest.raises(ConfigurationError):
            AccuracyEvaluator(runner, score_index=5).evaluate(scenario_net, "w.pt", 1)

    @pytest.mark.parametrize("iterations", [0, -3])
    def test_non_positive_iterations_rejected_before_loading(self, scenario_net, iterations):
        runner = FakeRunner()
        with pytest.raises(ConfigurationError):
            AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", iterations)
        assert runner.loaded == []

    def test_loads_without_observation_and_releases(self, scenario_net):
        runner = FakeRunner()
        AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", 2)
        assert runner.loaded == [(scenario_net, False)]
        assert all(h.released for h in runner.handles)

    def test_releases_on_engine_error(self, scenario_net):
        runner = FakeRunner(fail_on_forward=lambda d: True)
        with pytest.raises(EngineError):
            AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", 2)
        assert runner.handles[0].released

    def test_incompatible_weights_surface_unchanged(self, scenario_net):
        with pytest.raises(EngineError, match="Incompatible weights"):
            AccuracyEvaluator(FakeRunner()).evaluate(scenario_net, "incompatible.pt", 1)


def test_on_batch_callback_runs_once_per_batch(scenario_net):
    runner = FakeRunner()
    handle = runner.load(scenario_net, "w.pt")
    seen = []
    run_forward_batches(runner, handle, 4, on_batch=seen.append)
    assert seen == [0, 1, 2, 3]


def test_every_batch_score_is_logged(scenario_net, caplog):
    runner = FakeRunner(score_fn=_batch_series([0.25, 0.75]))
    with caplog.at_level(logging.INFO):
        AccuracyEvaluator(runner).evaluate(scenario_net, "w.pt", iterations=2)
    batch_lines = [m for m in caplog.messages if "Batch " in m]
    assert any("Batch 0, accuracy = 0.25" in m for m in batch_lines)
    assert any("Batch 1, accuracy = 0.75" in m for m in batch_lines)
    assert any("Batch 1, loss = 0.5" in m for m in batch_lines)
