"""
Noun Artwork and Trait Metrics

- TraitMetricsCalculator: pure area / color-count / brightness metrics from a
  seed and the Nouns image data (RLE-encoded parts and palette)
- DescriptorArtworkRenderer: renders the SVG through a descriptor contract's
  ``generateSVGImage`` call, failing soft to None
"""

import asyncio
import base64
import binascii
import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from web3 import Web3

from .types import NounSeed, NounMetrics, RenderError

logger = logging.getLogger(__name__)

RLE_HEADER_CHARS = 10  # top, right, bottom, left, width
DEFAULT_BRIGHTNESS = 128

DESCRIPTOR_ABI = [
    {
        "inputs": [
            {
                "components": [
                    {"internalType": "uint48", "name": "background", "type": "uint48"},
                    {"internalType": "uint48", "name": "body", "type": "uint48"},
                    {"internalType": "uint48", "name": "accessory", "type": "uint48"},
                    {"internalType": "uint48", "name": "head", "type": "uint48"},
                    {"internalType": "uint48", "name": "glasses", "type": "uint48"},
                ],
                "internalType": "struct INounsSeeder.Seed",
                "name": "seed",
                "type": "tuple",
            }
        ],
        "name": "generateSVGImage",
        "outputs": [{"internalType": "string", "name": "", "type": "string"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _luma(hex_color: str) -> int:
    hex_color = hex_color.lstrip('#')
    r = int(hex_color[0:2], 16)
    g = int(hex_color[2:4], 16)
    b = int(hex_color[4:6], 16)
    return _round_half_up(0.299 * r + 0.587 * g + 0.114 * b)


def parse_runs(data: str) -> List[Tuple[int, int]]:
    """
    Decode one RLE part into (run length, palette index) pairs.

    Transparent runs (palette index 0) are dropped.
    """
    if data.startswith('0x'):
        data = data[2:]
    rects = data[RLE_HEADER_CHARS:]
    runs = []
    for offset in range(0, len(rects) - 3, 4):
        chunk = rects[offset:offset + 4]
        length = int(chunk[0:2], 16)
        color_index = int(chunk[2:4], 16)
        if color_index != 0:
            runs.append((length, color_index))
    return runs


class TraitMetricsCalculator:
    """
    Computes NounMetrics from a seed.

    Without image data every seed maps to the default metrics.
    """

    def __init__(self, image_data: Optional[Dict[str, Any]] = None):
        self.image_data = image_data or {}
        self._bgcolors: List[str] = self.image_data.get('bgcolors', [])
        self._palette: List[str] = self.image_data.get('palette', [])
        images = self.image_data.get('images', {})
        self._parts = {
            'body': images.get('bodies', []),
            'accessory': images.get('accessories', []),
            'head': images.get('heads', []),
            'glasses': images.get('glasses', []),
        }

    @classmethod
    def from_file(cls, path: Optional[Path]) -> "TraitMetricsCalculator":
        """Load image data JSON; a missing or unreadable file yields default metrics"""
        if path is None:
            return cls()
        try:
            with open(path, 'r') as f:
                return cls(json.load(f))
        except (OSError, ValueError) as e:
            logger.warning(f"Image data unavailable at {path}, metrics will use defaults: {e}")
            return cls()

    @property
    def loaded(self) -> bool:
        return bool(self._palette)

    def _trait_parts(self, seed: NounSeed) -> List[Dict[str, Any]]:
        parts = []
        for trait, index in (
            ('body', seed.body),
            ('accessory', seed.accessory),
            ('head', seed.head),
            ('glasses', seed.glasses),
        ):
            candidates = self._parts[trait]
            if 0 <= index < len(candidates) and candidates[index]:
                parts.append(candidates[index])
        return parts

    def compute_metrics(self, seed: NounSeed) -> NounMetrics:
        area = 0
        colors = set()
        for part in self._trait_parts(seed):
            for length, color_index in parse_runs(part.get('data', '')):
                area += length
                colors.add(color_index)

        brightness_values = []
        if 0 <= seed.background < len(self._bgcolors):
            brightness_values.append(_luma(self._bgcolors[seed.background]))
        for color_index in sorted(colors):
            if color_index < len(self._palette) and self._palette[color_index]:
                brightness_values.append(_luma(self._palette[color_index]))

        if brightness_values:
            brightness = _round_half_up(sum(brightness_values) / len(brightness_values))
        else:
            brightness = DEFAULT_BRIGHTNESS

        return NounMetrics(area=area, color_count=len(colors), brightness=brightness)


class DescriptorArtworkRenderer:
    """
    Renders Noun SVG markup through a descriptor contract.

    The web3 call is blocking, so it runs in a worker thread bounded by
    ``timeout_seconds``.
    """

    def __init__(self, web3: Web3, timeout_seconds: float = 10.0):
        self.web3 = web3
        self.timeout_seconds = timeout_seconds
        self._contracts: Dict[str, Any] = {}

    def _contract(self, address: str):
        if address not in self._contracts:
            self._contracts[address] = self.web3.eth.contract(
                address=Web3.to_checksum_address(address),
                abi=DESCRIPTOR_ABI
            )
        return self._contracts[address]

    def _render_sync(self, address: str, seed: NounSeed) -> str:
        encoded = self._contract(address).functions.generateSVGImage(seed.as_tuple()).call()
        try:
            return base64.b64decode(encoded).decode('utf-8')
        except (binascii.Error, UnicodeDecodeError) as e:
            raise RenderError(f"Descriptor {address} returned undecodable SVG: {e}") from e

    async def render(self, source_id: str, seed: NounSeed) -> Optional[str]:
        """Return SVG markup, or None on any failure or timeout"""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._render_sync, source_id, seed),
                timeout=self.timeout_seconds
            )
        except asyncio.TimeoutError:
            logger.warning(f"Artwork render timed out after {self.timeout_seconds}s ({source_id})")
        except Exception as e:
            logger.warning(f"Artwork render failed ({source_id}): {e}")
        return None
