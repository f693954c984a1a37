"""Shared fixtures: synthetic images written to a temporary directory."""

from pathlib import Path
from typing import Callable

import numpy as np
import pytest
from PIL import Image

ImageFactory = Callable[..., Path]


def gradient_image(width: int, height: int, mode: str = "RGB") -> Image.Image:
    """Smooth RGB gradient; compresses like a photo rather than like noise."""
    x = np.linspace(0, 255, width, dtype=np.uint8)
    y = np.linspace(0, 255, height, dtype=np.uint8)
    red = np.tile(x, (height, 1))
    green = np.tile(y[:, None], (1, width))
    blue = np.full((height, width), 128, dtype=np.uint8)
    img = Image.fromarray(np.dstack([red, green, blue]))

    if mode == "RGBA":
        img.putalpha(128)
    elif mode != "RGB":
        img = img.convert(mode)
    return img


@pytest.fixture
def make_image(tmp_path: Path) -> ImageFactory:
    """Write a gradient image of the given size; format follows the file extension."""

    def _make(name: str, width: int, height: int, mode: str = "RGB", **save_kwargs) -> Path:
        path = tmp_path / name
        gradient_image(width, height, mode).save(path, **save_kwargs)
        return path

    return _make


@pytest.fixture
def make_animation(tmp_path: Path) -> ImageFactory:
    """Write an animated GIF whose frames differ in color, so none are merged."""

    def _make(name: str, width: int, height: int, frames: int = 3, duration: int = 100) -> Path:
        path = tmp_path / name
        colors = [(255, 0, 0), (0, 255, 0), (0, 0, 255), (255, 255, 0), (0, 255, 255)]
        images = [Image.new("RGB", (width, height), colors[i % len(colors)]) for i in range(frames)]
        images[0].save(path, save_all=True, append_images=images[1:], duration=duration, loop=0)
        return path

    return _make
