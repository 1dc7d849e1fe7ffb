"""Unit tests for the network description model and its JSON format."""

from __future__ import annotations

import json
import os
import stat

import pytest

from dynfix.errors import EngineError
from dynfix.models.description import (
    LayerDescriptor,
    NetworkDescription,
    QuantizationParam,
    base_type,
    load_description,
    quantized_type,
    write_description,
)


def test_type_mapping():
    assert quantized_type("Convolution") == "QuantConvolution"
    assert quantized_type("QuantInnerProduct") == "QuantInnerProduct"
    assert base_type("QuantConvolution") == "Convolution"
    assert base_type("ReLU") == "ReLU"
    with pytest.raises(ValueError):
        quantized_type("Pooling")


class TestQuantizationParam:
    def test_unset_fields_omitted(self):
        assert QuantizationParam(bw_params=8, fl_params=5).to_dict() == {
            "precision": "dynamic_fixed_point",
            "bw_params": 8,
            "fl_params": 5,
        }

    def test_flags(self):
        q = QuantizationParam(bw_layer_in=8, fl_layer_in=6)
        assert q.quantizes_input
        assert not q.quantizes_params
        assert not q.quantizes_output

    def test_unknown_field_rejected(self):
        with pytest.raises(EngineError):
            QuantizationParam.from_dict({"bw_params": 8, "exponent": 3})


class TestNetworkDescription:
    def test_json_round_trip(self, scenario_net, tmp_path):
        quantized = scenario_net.replace_layers(
            [
                LayerDescriptor(l.name, "QuantConvolution", l.params, QuantizationParam(bw_params=8, fl_params=5))
                if l.name == "conv1" else l
                for l in scenario_net
            ]
        )
        path = write_description(quantized, tmp_path / "q.json")
        assert load_description(path) == quantized

        raw = json.loads(path.read_text(encoding="utf-8"))
        assert raw["layers"][0]["quantization_param"] == {"precision": "dynamic_fixed_point", "bw_params": 8, "fl_params": 5}
        assert "quantization_param" not in raw["layers"][1]
        assert raw["input_shape"] == [1, 4, 4]

    def test_duplicate_names(self):
        with pytest.raises(EngineError, match="Duplicate"):
            NetworkDescription("dup", (LayerDescriptor("a", "ReLU"), LayerDescriptor("a", "ReLU")))

    def test_layer_lookup(self, scenario_net):
        assert scenario_net.layer("fc1").type == "InnerProduct"
        assert len(scenario_net) == 4
        with pytest.raises(KeyError):
            scenario_net.layer("fc9")

    def test_replace_layers_keeps_order(self, scenario_net):
        with pytest.raises(ValueError):
            scenario_net.replace_layers(list(reversed(scenario_net.layers)))

    @pytest.mark.parametrize("payload", [[], {"name": "x"}, {"layers": [{"type": "ReLU"}]}])
    def test_malformed(self, payload):
        with pytest.raises(EngineError):
            NetworkDescription.from_dict(payload)


class TestFiles:
    def test_missing_file(self, tmp_path):
        with pytest.raises(EngineError, match="not found"):
            load_description(tmp_path / "nope.json")

    def test_invalid_json(self, tmp_path):
        p = tmp_path / "broken.json"
        p.write_text("{ not json", encoding="utf-8")
        with pytest.raises(EngineError, match="not valid JSON"):
            load_description(p)

    def test_write_creates_parents_and_leaves_no_temp_files(self, scenario_net, tmp_path):
        out = write_description(scenario_net, tmp_path / "a" / "b" / "net.json")
        assert out.exists()
        assert [p.name for p in out.parent.iterdir()] == ["net.json"]
        assert out.read_text(encoding="utf-8").endswith("\n")

    @pytest.mark.skipif(os.name != "posix", reason="POSIX permission bits")
    def test_written_file_follows_umask(self, scenario_net, tmp_path):
        previous = os.umask(0o022)
        try:
            out = write_description(scenario_net, tmp_path / "net.json")
        finally:
            os.umask(previous)
        assert stat.S_IMODE(out.stat().st_mode) == 0o644
