"""
Unit tests for trait metrics and descriptor rendering
"""

import base64
import json
import time
from unittest.mock import Mock

import pytest

from berry_indexer.artwork import (
    DEFAULT_BRIGHTNESS,
    DescriptorArtworkRenderer,
    TraitMetricsCalculator,
    parse_runs,
)
from berry_indexer.types import NounMetrics, NounSeed

from factories import DESCRIPTOR_V3, IMAGE_DATA


def _seed(background=1, body=0, accessory=0, head=0, glasses=0):
    return NounSeed(background=background, body=body, accessory=accessory, head=head, glasses=glasses)


def test_parse_runs_skips_header_and_transparent_runs():
    assert parse_runs("0x0015171f09" + "0201" + "0300" + "0102") == [(2, 1), (1, 2)]
    assert parse_runs("0015171f09") == []


def test_metrics_from_image_data(metrics_calculator):
    metrics = metrics_calculator.compute_metrics(_seed())
    assert metrics == NounMetrics(area=13, color_count=3, brightness=137)


def test_metrics_ignore_unknown_trait_indexes(metrics_calculator):
    metrics = metrics_calculator.compute_metrics(_seed(body=5, accessory=5, head=5, glasses=5))
    assert metrics.area == 0
    assert metrics.color_count == 0
    # Only the background contributes
    assert metrics.brightness == 218


def test_metrics_without_image_data_use_defaults():
    calculator = TraitMetricsCalculator()
    assert not calculator.loaded
    metrics = calculator.compute_metrics(_seed())
    assert metrics == NounMetrics(area=0, color_count=0, brightness=DEFAULT_BRIGHTNESS)


def test_image_data_loaded_from_file(tmp_path):
    path = tmp_path / "image-data.json"
    path.write_text(json.dumps(IMAGE_DATA))

    assert TraitMetricsCalculator.from_file(path).loaded
    assert not TraitMetricsCalculator.from_file(tmp_path / "missing.json").loaded
    assert not TraitMetricsCalculator.from_file(None).loaded


def _web3_returning(call):
    web3 = Mock()
    web3.eth.contract.return_value.functions.generateSVGImage.return_value.call = call
    return web3


async def test_renderer_decodes_svg():
    svg = "<svg>noun</svg>"
    web3 = _web3_returning(Mock(return_value=base64.b64encode(svg.encode()).decode()))
    renderer = DescriptorArtworkRenderer(web3)

    assert await renderer.render(DESCRIPTOR_V3, _seed()) == svg
    web3.eth.contract.return_value.functions.generateSVGImage.assert_called_once_with((1, 0, 0, 0, 0))


@pytest.mark.parametrize("call", [
    Mock(side_effect=ValueError("execution reverted")),
    Mock(return_value=base64.b64encode(b"\xff\xfe").decode()),
])
async def test_renderer_fails_soft(call):
    renderer = DescriptorArtworkRenderer(_web3_returning(call))
    assert await renderer.render(DESCRIPTOR_V3, _seed()) is None


async def test_renderer_times_out():
    def slow_call():
        time.sleep(0.2)
        return ""

    renderer = DescriptorArtworkRenderer(_web3_returning(Mock(side_effect=slow_call)), timeout_seconds=0.01)
    assert await renderer.render(DESCRIPTOR_V3, _seed()) is None
