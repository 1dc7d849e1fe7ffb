"""End-to-end tests for SearchOrchestrator on the in-memory runner."""

from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from conftest import FakeRunner

from dynfix.errors import ConfigurationError, EngineError
from dynfix.models.description import load_description
from dynfix.overwatch import format_calibration_summary
from dynfix.pipeline.search import (
    CalibrationStage,
    QuantizationTarget,
    SearchOrchestrator,
    Trial,
    check_write_permissions,
    select_bitwidth,
)
from dynfix.quantize.builder import CandidateConfigBuilder
from dynfix.quantize.evaluator import AccuracyEvaluator
from dynfix.quantize.integer_lengths import IntegerLengthCalculator
from dynfix.quantize.statistics import StatisticsCollector


def _is_combined(description) -> bool:
    q = description.layer("conv1").quantization
    return q is not None and q.quantizes_params and q.quantizes_input


class TestFullRun:
    def test_reaches_done_and_writes_description(self, calib_config, scenario_net):
        runner = FakeRunner()
        orch = SearchOrchestrator(calib_config, runner, description=scenario_net)
        result = orch.run()

        assert orch.stage == CalibrationStage.DONE
        assert result.baseline_accuracy == pytest.approx(0.9)
        assert result.conv_weights.accuracy == pytest.approx(0.89)
        assert result.fc_weights.accuracy == pytest.approx(0.89)
        assert result.activations.accuracy == pytest.approx(0.86)
        assert result.combined_accuracy == pytest.approx(0.84)

        written = load_description(calib_config.model_quantized)
        assert written == result.description
        conv = written.layer("conv1")
        assert conv.type == "QuantConvolution"
        assert (conv.quantization.fl_params, conv.quantization.fl_layer_in, conv.quantization.fl_layer_out) == (5, 6, 7)
        assert written.layer("relu1").quantization is None
        assert runner.written == [Path(calib_config.model_quantized)]

    def test_every_handle_released(self, calib_config, scenario_net):
        runner = FakeRunner()
        SearchOrchestrator(calib_config, runner, description=scenario_net).run()
        # baseline + conv + fc + activations + combined
        assert len(runner.handles) == 5
        assert all(h.released for h in runner.handles)
        assert [observe for _, observe in runner.loaded] == [True, False, False, False, False]

    def test_loads_description_from_config(self, calib_config, scenario_net):
        scenario_net_path = Path(calib_config.model)
        scenario_net_path.write_text(scenario_net.to_text(), encoding="utf-8")
        result = SearchOrchestrator(calib_config, FakeRunner()).run()
        assert [layer.name for layer in result.description] == ["conv1", "relu1", "flatten", "fc1"]

    def test_summary(self, calib_config, scenario_net):
        result = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net).run()
        text = format_calibration_summary(result)
        assert "Baseline 32-bit float: 0.900000" in text
        assert "  8-bit: \t0.890000" in text
        assert "Accuracy: 0.840000" in text
        assert text.endswith("Please fine-tune.")

    def test_result_to_dict_is_json_serialisable(self, calib_config, scenario_net):
        result = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net).run()
        payload = json.loads(json.dumps(result.to_dict()))
        assert payload["conv_weights"]["bitwidth"] == 8
        assert {s["layer"] for s in payload["statistics"]} == {"conv1", "relu1", "fc1"}

    def test_run_twice_is_rejected(self, calib_config, scenario_net):
        orch = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net)
        orch.run()
        with pytest.raises(RuntimeError):
            orch.run()


class TestMultipleCandidates:
    def test_every_bitwidth_scored(self, calib_config, scenario_net):
        calib_config.bitwidth_weights = [4, 8, 16]
        calib_config.bitwidth_activations = [8, 16]
        result = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net).run()
        assert [t.bitwidth for t in result.conv_weights.trials] == [4, 8, 16]
        assert [t.bitwidth for t in result.activations.trials] == [8, 16]
        assert result.conv_weights.bitwidth == 16
        assert result.conv_weights.trials[0].accuracy == pytest.approx(0.88)

    def test_accuracy_floor_keeps_most_accurate(self, calib_config, scenario_net):
        calib_config.bitwidth_weights = [4, 8, 16]
        calib_config.max_accuracy_drop = 0.015
        result = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net).run()
        assert result.conv_weights.bitwidth == 16
        assert result.conv_weights.accuracy == pytest.approx(0.895)

    def test_unreachable_floor_warns_and_falls_back(self, calib_config, scenario_net, caplog):
        calib_config.bitwidth_weights = [4, 8]
        calib_config.max_accuracy_drop = 0.0
        with caplog.at_level(logging.WARNING):
            result = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net).run()
        assert result.conv_weights.bitwidth == 8
        assert any("no candidate reaches accuracy floor" in m for m in caplog.messages)


class TestSelectBitwidth:
    def test_best_accuracy_wins(self):
        chosen = select_bitwidth(QuantizationTarget.CONV_WEIGHTS, [Trial(4, 0.7), Trial(8, 0.88), Trial(16, 0.87)])
        assert (chosen.bitwidth, chosen.accuracy) == (8, 0.88)

    def test_tie_goes_to_narrower(self):
        chosen = select_bitwidth(QuantizationTarget.FC_WEIGHTS, [Trial(8, 0.9), Trial(4, 0.9)])
        assert chosen.bitwidth == 4

    def test_most_accurate_above_floor(self):
        trials = [Trial(4, 0.70), Trial(8, 0.86), Trial(16, 0.89)]
        chosen = select_bitwidth(QuantizationTarget.ACTIVATIONS, trials, accuracy_floor=0.85)
        assert (chosen.bitwidth, chosen.accuracy) == (16, 0.89)
        assert chosen.trials == tuple(trials)

    def test_nothing_reaches_floor_keeps_best(self):
        chosen = select_bitwidth(QuantizationTarget.ACTIVATIONS, [Trial(4, 0.5), Trial(8, 0.6)], accuracy_floor=0.9)
        assert chosen.bitwidth == 8

    def test_no_trials(self):
        with pytest.raises(ConfigurationError):
            select_bitwidth(QuantizationTarget.CONV_WEIGHTS, [])


class TestFailures:
    def test_unknown_trimming_mode_before_any_work(self, calib_config, scenario_net):
        calib_config.trimming_mode = "integer_power_of_2_weights"
        runner = FakeRunner()
        with pytest.raises(ConfigurationError, match="Unknown trimming mode"):
            SearchOrchestrator(calib_config, runner, description=scenario_net).run()
        assert runner.loaded == []

    def test_zero_iterations_rejected(self, calib_config, scenario_net):
        calib_config.iterations = 0
        runner = FakeRunner()
        with pytest.raises(ConfigurationError):
            SearchOrchestrator(calib_config, runner, description=scenario_net).run()
        assert runner.loaded == []

    def test_unwritable_output(self, calib_config, scenario_net, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x", encoding="utf-8")
        calib_config.model_quantized = str(blocker / "net_dfp.json")
        runner = FakeRunner()
        with pytest.raises(ConfigurationError, match="write permissions"):
            SearchOrchestrator(calib_config, runner, description=scenario_net).run()
        assert runner.loaded == []

    def test_incompatible_weights(self, calib_config, scenario_net):
        calib_config.weights = "incompatible.pt"
        with pytest.raises(EngineError, match="Incompatible weights"):
            SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net).run()

    def test_combined_failure_writes_nothing(self, calib_config, scenario_net):
        runner = FakeRunner(fail_on_forward=_is_combined)
        orch = SearchOrchestrator(calib_config, runner, description=scenario_net)
        with pytest.raises(EngineError):
            orch.run()
        assert orch.stage == CalibrationStage.ACTIVATIONS_EVALUATED
        assert runner.written == []
        assert not Path(calib_config.model_quantized).exists()
        assert not Path(calib_config.model_quantized).parent.exists()

    def test_illegal_transition(self, calib_config, scenario_net):
        orch = SearchOrchestrator(calib_config, FakeRunner(), description=scenario_net)
        with pytest.raises(RuntimeError):
            orch._advance(CalibrationStage.CONV_EVALUATED)
        orch._advance(CalibrationStage.BASELINE_MEASURED)
        with pytest.raises(RuntimeError):
            orch._advance(CalibrationStage.BASELINE_MEASURED)


def test_combined_candidate_is_reproducible(scenario_net):
    runner = FakeRunner()
    _, stats = StatisticsCollector(runner).collect(scenario_net, "w.pt", 2)
    builder = CandidateConfigBuilder(IntegerLengthCalculator().table(stats))
    evaluator = AccuracyEvaluator(runner)
    first = SearchOrchestrator.build_combined(builder, scenario_net, 8, 8, 8)
    # an unrelated candidate in between must not leak into the next build
    evaluator.evaluate(SearchOrchestrator.build_combined(builder, scenario_net, 4, 4, 4), "w.pt", 2)
    second = SearchOrchestrator.build_combined(builder, scenario_net, 8, 8, 8)
    assert first == second
    assert evaluator.evaluate(first, "w.pt", 2) == pytest.approx(evaluator.evaluate(second, "w.pt", 2))


class TestWritePermissionCheck:
    def test_new_file_removed(self, tmp_path):
        target = tmp_path / "sub" / "result.json"
        check_write_permissions(str(target))
        assert not target.exists()
        assert not target.parent.exists()

    def test_existing_file_kept(self, tmp_path):
        target = tmp_path / "keep.json"
        target.write_text("{}", encoding="utf-8")
        check_write_permissions(str(target))
        assert target.read_text(encoding="utf-8") == "{}"

    def test_empty_path(self):
        with pytest.raises(ConfigurationError):
            check_write_permissions("")
