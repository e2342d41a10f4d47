"""
On-screen prediction overlay for the presentation loop.

Only reads the already-validated prediction state; it never triggers
inference.
"""

import cv2
import numpy as np


class PredictionOverlay:
    """Draws ``Predicted Class: <label>`` in the top-left corner."""

    def __init__(self, config: dict):
        self._enabled = config.get("display_predicted_class", True)
        self._color = tuple(int(c) for c in config.get("text_color", [0, 0, 255]))
        # 0-99; higher is larger, relative to the frame width
        self._font_scale = min(max(int(config.get("font_scale", 50)), 0), 99)
        self._show_rate = config.get("show_tick_rate", False)

    def text_for(self, state: dict) -> str:
        label = state.get("label") if state.get("valid") else None
        return "Predicted Class: %s" % (label if label is not None else "Invalid index")

    def font_size_px(self, frame_width: int) -> float:
        return frame_width * (1.0 / (100 - self._font_scale))

    def render(self, frame: np.ndarray, state: dict) -> np.ndarray:
        """Draw on ``frame`` in place and return it."""
        if not self._enabled:
            return frame
        h, w = frame.shape[:2]
        # Hershey fonts are ~30 px tall at scale 1.0
        scale = max(self.font_size_px(w) / 30.0, 0.3)
        thickness = max(int(scale * 2), 1)
        (_, text_h), _ = cv2.getTextSize("Ag", cv2.FONT_HERSHEY_SIMPLEX, scale, thickness)

        y = 10 + text_h
        cv2.putText(frame, self.text_for(state), (10, y), cv2.FONT_HERSHEY_SIMPLEX,
                    scale, self._color, thickness, cv2.LINE_AA)

        if self._show_rate and "tick_rate" in state:
            cv2.putText(frame, "%.1f Hz" % state["tick_rate"], (10, y + text_h + 10),
                        cv2.FONT_HERSHEY_SIMPLEX, scale * 0.5, self._color,
                        max(thickness // 2, 1), cv2.LINE_AA)
        return frame
