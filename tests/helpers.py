"""Builders for small models and images used across the tests."""

from __future__ import annotations

from io import BytesIO
from pathlib import Path

import numpy as np
import onnx
from onnx import TensorProto, helper
from PIL import Image

DEFAULT_MODEL_ID = "model_fp16.onnx"


def build_mask_model(path: Path, input_name: str = "input", output_name: str = "sigmoid_0") -> Path:
    """
    Write a tiny stand-in segmentation model: sigmoid(mean over channels).

    Shapes match the real RMBG export, (1, 3, 1024, 1024) -> (1, 1, 1024, 1024).
    """
    inp = helper.make_tensor_value_info(input_name, TensorProto.FLOAT, [1, 3, 1024, 1024])
    out = helper.make_tensor_value_info(output_name, TensorProto.FLOAT, [1, 1, 1024, 1024])
    nodes = [
        helper.make_node("ReduceMean", [input_name], ["channel_mean"], axes=[1], keepdims=1),
        helper.make_node("Sigmoid", ["channel_mean"], [output_name]),
    ]
    graph = helper.make_graph(nodes, "mask-model", [inp], [out])
    model = helper.make_model(
        graph,
        producer_name="rmbg-tests",
        ir_version=8,
        opset_imports=[helper.make_opsetid("", 17)],
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    onnx.save(model, str(path))
    return path


def encode_image(image: Image.Image, fmt: str = "PNG") -> bytes:
    buf = BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


def gradient_image(width: int, height: int) -> Image.Image:
    """Opaque RGB image whose brightness rises left-to-right and top-to-bottom."""
    xs = np.linspace(0, 255, width, dtype=np.float32)[None, :]
    ys = np.linspace(0, 255, height, dtype=np.float32)[:, None]
    red = np.broadcast_to(xs, (height, width))
    green = np.broadcast_to(ys, (height, width))
    blue = (red + green) / 2.0
    rgb = np.stack([red, green, blue], axis=-1).astype(np.uint8)
    return Image.fromarray(rgb)
