"""
Shared fixtures: a tiny ONNX classifier and a label catalog on disk.

The generated model averages each RGB channel of a normalized image and
scores five classes from the three means:

    logits = [R, G, B, -(R + G + B), 0]

so a pure red frame predicts class 0 and a black frame predicts class 3.
"""

import json
import sys
from pathlib import Path

import numpy as np
import onnx
import pytest
from onnx import helper, numpy_helper, TensorProto

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.types import Frame
from modules.utils.config import Config

CLASS_NAMES = ["A", "B", "C", "Stop", "Y"]


def build_classifier_model(channel_last=False, extra_output=False):
    """Build the five-class test model described in the module docstring."""
    weights = np.array([
        [1.0, 0.0, 0.0, -1.0, 0.0],
        [0.0, 1.0, 0.0, -1.0, 0.0],
        [0.0, 0.0, 1.0, -1.0, 0.0],
    ], dtype=np.float32)

    nodes = []
    if channel_last:
        image = helper.make_tensor_value_info("image", TensorProto.FLOAT, [1, "h", "w", 3])
        nodes.append(helper.make_node("Transpose", ["image"], ["image_nchw"], perm=[0, 3, 1, 2]))
        pool_input = "image_nchw"
    else:
        image = helper.make_tensor_value_info("image", TensorProto.FLOAT, [1, 3, "h", "w"])
        pool_input = "image"

    nodes.extend([
        helper.make_node("GlobalAveragePool", [pool_input], ["pooled"]),
        helper.make_node("Flatten", ["pooled"], ["features"], axis=1),
        helper.make_node("MatMul", ["features", "W"], ["logits"]),
    ])
    outputs = [helper.make_tensor_value_info("logits", TensorProto.FLOAT, [1, 5])]
    if extra_output:
        outputs.append(helper.make_tensor_value_info("features", TensorProto.FLOAT, [1, 3]))

    graph = helper.make_graph(
        nodes, "tiny_asl", [image], outputs,
        initializer=[numpy_helper.from_array(weights, name="W")],
    )
    model = helper.make_model(graph, opset_imports=[helper.make_opsetid("", 13)])
    model.ir_version = 8
    onnx.checker.check_model(model)
    return model


def solid_frame(bgr, width=320, height=240, frame_id=1):
    image = np.empty((height, width, 3), dtype=np.uint8)
    image[:] = bgr
    return Frame(image=image, timestamp=0.0, frame_id=frame_id)


@pytest.fixture
def classifier_model():
    return build_classifier_model()


@pytest.fixture
def model_path(tmp_path):
    path = tmp_path / "tiny_asl.onnx"
    onnx.save(build_classifier_model(extra_output=True), str(path))
    return str(path)


@pytest.fixture
def labels_path(tmp_path):
    path = tmp_path / "labels.json"
    path.write_text(json.dumps({"classes": CLASS_NAMES}))
    return str(path)


@pytest.fixture(autouse=True)
def reset_config():
    """Config is a singleton; give every test a clean one."""
    Config.reset()
    yield
    Config.reset()
