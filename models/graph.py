"""
Classification graph loading and output augmentation.

Loads a static ONNX classification graph once and appends two derived
layers to the selected output:

    <output> -> Softmax(<softmax_layer>) -> ArgMax(<argmax_layer>)

The ArgMax output is a single int64 class index per batch item, so readback
only ever transfers one scalar. After augmentation the graph is serialized
and frozen; every backend builds from the same bytes.
"""

import os
import logging

import onnx
from onnx import helper, TensorProto

from core.types import ChannelOrder
from modules.utils.logger import log_timing

logger = logging.getLogger(__name__)

DEFAULT_SOFTMAX_LAYER = "softmax_layer"
DEFAULT_ARGMAX_LAYER = "argmax_layer"


class ClassificationGraph:
    """Read-only view of an augmented ONNX classification graph."""

    def __init__(self, model: onnx.ModelProto, source_output: str,
                 softmax_layer: str, argmax_layer: str):
        self._serialized = model.SerializeToString()
        self._source_output = source_output
        self._softmax_layer = softmax_layer
        self._argmax_layer = argmax_layer

        graph = model.graph
        initializers = {init.name for init in graph.initializer}
        inputs = [i for i in graph.input if i.name not in initializers]
        if not inputs:
            raise ValueError("Graph declares no runtime inputs")
        self._input_name = inputs[0].name
        self._input_shape = tuple(_dims(inputs[0]))
        self._outputs = tuple(o.name for o in graph.output)

    # -----------------------------------------------------------------
    # Loading
    # -----------------------------------------------------------------

    @classmethod
    @log_timing
    def load(cls, path: str, output_layer_index: int = 0,
             softmax_layer: str = DEFAULT_SOFTMAX_LAYER,
             argmax_layer: str = DEFAULT_ARGMAX_LAYER) -> "ClassificationGraph":
        """Load an ONNX file and append the softmax/argmax layers.

        Raises:
            FileNotFoundError: If the graph file does not exist
            ValueError: If the output index or layer names are invalid
        """
        if not os.path.isfile(path):
            raise FileNotFoundError("Classification graph not found: %s" % path)
        model = onnx.load(path)
        logger.info("Loaded graph %s (opset %s, %d nodes)",
                    path, _default_opset(model), len(model.graph.node))
        return cls.augment(model, output_layer_index, softmax_layer, argmax_layer)

    @classmethod
    def augment(cls, model: onnx.ModelProto, output_layer_index: int = 0,
                softmax_layer: str = DEFAULT_SOFTMAX_LAYER,
                argmax_layer: str = DEFAULT_ARGMAX_LAYER) -> "ClassificationGraph":
        """Append Softmax and ArgMax to a copy of ``model``."""
        model_copy = onnx.ModelProto()
        model_copy.CopyFrom(model)
        graph = model_copy.graph

        outputs = [o for o in graph.output]
        if not 0 <= output_layer_index < len(outputs):
            raise ValueError(
                "output_layer_index %d out of range: graph has %d outputs (%s)"
                % (output_layer_index, len(outputs), ", ".join(o.name for o in outputs))
            )
        source = outputs[output_layer_index]

        taken = {o for node in graph.node for o in node.output}
        taken.update(i.name for i in graph.input)
        for name in (softmax_layer, argmax_layer):
            if name in taken:
                raise ValueError("Layer name '%s' already exists in the graph" % name)
        if softmax_layer == argmax_layer:
            raise ValueError("Softmax and argmax layers need distinct names")

        graph.node.append(helper.make_node(
            "Softmax", inputs=[source.name], outputs=[softmax_layer],
            name=softmax_layer, axis=-1,
        ))
        graph.node.append(helper.make_node(
            "ArgMax", inputs=[softmax_layer], outputs=[argmax_layer],
            name=argmax_layer, axis=-1, keepdims=1,
        ))

        elem_type = source.type.tensor_type.elem_type or TensorProto.FLOAT
        # The checker requires a declared shape on every graph output
        source_dims = _declared_dims(source) or [None, None]
        argmax_dims = source_dims[:-1] + [1]
        graph.output.append(helper.make_tensor_value_info(softmax_layer, elem_type, source_dims))
        graph.output.append(
            helper.make_tensor_value_info(argmax_layer, TensorProto.INT64, argmax_dims))

        onnx.checker.check_model(model_copy)
        logger.info("Appended %s -> %s to output '%s'",
                    softmax_layer, argmax_layer, source.name)
        return cls(model_copy, source.name, softmax_layer, argmax_layer)

    # -----------------------------------------------------------------
    # Read-only accessors
    # -----------------------------------------------------------------

    @property
    def serialized(self) -> bytes:
        return self._serialized

    @property
    def input_name(self) -> str:
        return self._input_name

    @property
    def input_shape(self) -> tuple:
        """Declared input shape; symbolic dimensions are ``None``."""
        return self._input_shape

    @property
    def outputs(self) -> tuple:
        return self._outputs

    @property
    def source_output(self) -> str:
        return self._source_output

    @property
    def softmax_layer(self) -> str:
        return self._softmax_layer

    @property
    def argmax_layer(self) -> str:
        return self._argmax_layer

    def input_channel_order(self):
        """Guess the layout of a rank-4 image input, or None if ambiguous."""
        shape = self._input_shape
        if len(shape) != 4:
            return None
        if shape[1] == 3 and shape[3] != 3:
            return ChannelOrder.CHANNEL_FIRST
        if shape[3] == 3 and shape[1] != 3:
            return ChannelOrder.CHANNEL_LAST
        return None

    def __repr__(self):
        return "ClassificationGraph(input=%s%s, outputs=%s)" % (
            self._input_name, list(self._input_shape), list(self._outputs))


def _dims(value_info):
    dims = []
    for d in value_info.type.tensor_type.shape.dim:
        dims.append(d.dim_value if d.HasField("dim_value") else None)
    return dims


def _declared_dims(value_info):
    """Dims of a value_info, keeping symbolic names; [] when no shape is set."""
    tensor_type = value_info.type.tensor_type
    if not tensor_type.HasField("shape"):
        return []
    dims = []
    for d in tensor_type.shape.dim:
        if d.HasField("dim_value"):
            dims.append(d.dim_value)
        elif d.HasField("dim_param"):
            dims.append(d.dim_param)
        else:
            dims.append(None)
    return dims


def _default_opset(model):
    for opset in model.opset_import:
        if opset.domain in ("", "ai.onnx"):
            return opset.version
    return None
