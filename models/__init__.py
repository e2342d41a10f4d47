"""
Inference package for the gesture classification graph.

Provides:
    - ClassificationGraph: ONNX graph with appended softmax/argmax outputs
    - BackendConfig / BackendType: execution backend selection
    - InferenceEngine: one forward pass per control tick
"""

__all__ = [
    "ClassificationGraph",
    "BackendConfig",
    "BackendType",
    "InferenceEngine",
]
