from __future__ import annotations

import pytest

import quant_core
from quant_core.capabilities import FEATURES, has_feature, version


def test_feature_table() -> None:
    assert has_feature("garch")
    assert has_feature("optimize_cdar")
    assert not has_feature("short_selling")
    assert not has_feature("does_not_exist")
    with pytest.raises(TypeError):
        FEATURES["short_selling"] = True  # type: ignore[index]


def test_version_is_static() -> None:
    assert version() == quant_core.__version__ == "0.5.0"
