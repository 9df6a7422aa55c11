import sys
import types

import pytest

from aharadar.pipeline import DryRunPipeline, load_pipeline


def test_dry_run_is_default():
    assert isinstance(load_pipeline(None), DryRunPipeline)
    assert isinstance(load_pipeline("dry_run"), DryRunPipeline)


def test_import_path_resolves_class(monkeypatch):
    module = types.ModuleType("fake_radar_pipeline")

    class Custom(DryRunPipeline):
        pass

    module.Custom = Custom
    module.instance = Custom()
    monkeypatch.setitem(sys.modules, "fake_radar_pipeline", module)

    assert isinstance(load_pipeline("fake_radar_pipeline:Custom"), Custom)
    assert load_pipeline("fake_radar_pipeline:instance") is module.instance


def test_bad_targets_rejected(monkeypatch):
    module = types.ModuleType("fake_partial_pipeline")

    class Partial:
        def run_pipeline_once(self, conn, params):
            return None

    module.Partial = Partial
    monkeypatch.setitem(sys.modules, "fake_partial_pipeline", module)

    with pytest.raises(ValueError):
        load_pipeline("no-colon")
    with pytest.raises(ValueError):
        load_pipeline("fake_partial_pipeline:Missing")
    with pytest.raises(ValueError):
        load_pipeline("fake_partial_pipeline:Partial")
