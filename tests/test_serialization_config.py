"""Tests for mark files, run configs and component assembly."""

from __future__ import annotations

import json

import numpy as np
import pytest

from mpp.annealing import ConstantTemperature, ExponentialInterpolation, LogarithmicCooling
from mpp.assembly import (
    build_configuration,
    build_context,
    build_domain,
    build_energy,
    build_proposer,
    build_prior,
    build_schedule,
    build_scheme,
    build_termination,
)
from mpp.config import SCHEMA_RUN_CONFIG_V1, OptimizationConfig, RunConfig, load_run_config
from mpp.energy import EnergyContext, WeightedSum
from mpp.marks import Ellipse, Ellipsoid, PointsMark
from mpp.serialization import (
    SCHEMA_MARKS_V1,
    marks_from_payload,
    marks_to_payload,
    read_marks_json,
    write_marks_json,
)
from mpp.termination import AllOf, IterationLimit


class TestMarksFiles:
    def test_file_round_trip_with_mixed_types(self, tmp_path):
        marks = [
            Ellipse(0, (4.0, 5.0, 0.0), (3.0, 2.0), angle=0.4),
            Ellipsoid(7, (1.0, 2.0, 3.0), (2.0, 2.0, 1.0)),
            PointsMark(9, ((1.0, 1.0, 1.0),)),
        ]
        path = write_marks_json(tmp_path / "out" / "marks.json", marks, metadata={"seed": 3})
        payload = json.loads(path.read_text(encoding="utf-8"))
        assert payload["schema_version"] == SCHEMA_MARKS_V1
        assert payload["count"] == 3
        assert payload["metadata"] == {"seed": 3}
        assert read_marks_json(path) == marks

    def test_wrong_schema_rejected(self):
        payload = marks_to_payload([])
        payload["schema_version"] = "mpp.marks.0"
        with pytest.raises(ValueError, match="schema"):
            marks_from_payload(payload)

    def test_duplicate_identifiers_rejected(self):
        mark = Ellipse(1, (4.0, 5.0, 0.0), (3.0, 2.0))
        payload = marks_to_payload([mark, mark.moved((10.0, 0.0))])
        with pytest.raises(ValueError, match="Duplicate"):
            marks_from_payload(payload)

    def test_non_object_file_rejected(self, tmp_path):
        path = tmp_path / "marks.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(ValueError):
            read_marks_json(path)


class TestRunConfig:
    def test_defaults_are_valid(self):
        config = RunConfig()
        assert config.planar
        assert set(config.active_kernels()) == {"birth", "death", "move", "dilate", "exchange"}

    @pytest.mark.parametrize(
        "overrides",
        [
            {"mark_type": "cube"},
            {"min_radius": 5.0, "max_radius": 2.0},
            {"shell": 1.0},
            {"kernel_weights": {"teleport": 1.0}},
            {"kernel_weights": {"birth": 0.0}},
            {"kernel_weights": {"birth": -1.0}},
            {"schedule": "linear"},
            {"end_temperature": 2.0},
            {"chains": 0},
            {"initial_marks": -1},
            {"rtree_max_entries": 3},
        ],
    )
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ValueError):
            RunConfig(**overrides)

    def test_dict_round_trip(self):
        config = RunConfig(iterations=50, kernel_weights={"birth": 2.0, "death": 1.0},
                           optimization=OptimizationConfig(track_best=False))
        payload = config.to_dict()
        assert payload["schema_version"] == SCHEMA_RUN_CONFIG_V1
        assert RunConfig.from_dict(payload) == config

    def test_unknown_keys_rejected(self):
        with pytest.raises(ValueError, match="Unknown RunConfig keys"):
            RunConfig.from_dict({"iterations": 10, "temprature": 1.0})

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "run.json"
        path.write_text(json.dumps({"iterations": 77, "chains": 2}), encoding="utf-8")
        config = load_run_config(str(path))
        assert config.iterations == 77
        assert config.chains == 2

    def test_overrides_skip_none(self):
        config = RunConfig(iterations=10, seed=4)
        updated = config.with_overrides(iterations=99, seed=None)
        assert updated.iterations == 99
        assert updated.seed == 4


class TestAssembly:
    def test_planar_domain_is_flat(self):
        domain = build_domain(RunConfig(domain_margin=2.0), (40, 30, 1))
        assert domain.min_corner == (2.0, 2.0, 0.0)
        assert domain.max_corner == (37.0, 27.0, 0.0)

    def test_volumetric_domain(self):
        domain = build_domain(RunConfig(mark_type="ellipsoid", domain_margin=100.0), (10, 10, 6))
        assert domain.min_corner == (4.5, 4.5, 2.5)
        assert domain.max_corner == (4.5, 4.5, 2.5)

    def test_proposer_uses_active_kernels(self):
        config = RunConfig(kernel_weights={"birth": 3.0, "death": 1.0, "move": 0.0})
        proposer = build_proposer(config, build_prior(config, (32, 32, 1)))
        assert proposer.names == ["birth", "death"]
        assert proposer.probabilities["birth"] == pytest.approx(0.75)

    def test_proposer_seeds_with_prior_births(self):
        config = RunConfig(mark_type="ellipsoid", initial_marks=3)
        proposer = build_proposer(config, build_prior(config, (32, 32, 16)))
        assert proposer.initial_kernel.name == "birth"
        proposer.check_compatible_with("ellipsoid")
        scheme = build_scheme(config, build_context(np.zeros((32, 32, 16))))
        assert scheme.initial_marks == 3

    def test_schedules(self):
        assert isinstance(build_schedule(RunConfig()), ExponentialInterpolation)
        assert isinstance(build_schedule(RunConfig(schedule="logarithmic")), LogarithmicCooling)
        assert isinstance(build_schedule(RunConfig(schedule="constant", start_temperature=0.0)),
                          ConstantTemperature)

    def test_termination_combines_optional_conditions(self):
        assert isinstance(build_termination(RunConfig()), IterationLimit)
        combined = build_termination(RunConfig(plateau_window=10, target_energy=-5.0, max_marks=20))
        assert isinstance(combined, AllOf)
        assert len(combined.conditions) == 4

    def test_energy_terms(self):
        assert len(build_energy(RunConfig()).terms) == 2
        only_contrast = build_energy(RunConfig(overlap_weight=0.0))
        assert isinstance(only_contrast, WeightedSum)
        assert len(only_contrast.terms) == 1

    def test_context_and_configuration(self):
        context = build_context(np.zeros((8, 8)))
        assert context.extent == (8, 8, 1)
        cfg = build_configuration(RunConfig(rtree_max_entries=6), [Ellipse(0, (2.0, 2.0, 0.0), (1.0, 1.0))])
        assert len(cfg) == 1
        assert cfg.index.max_entries == 6

    def test_scheme_needs_image(self):
        with pytest.raises(ValueError):
            build_scheme(RunConfig(), EnergyContext())
