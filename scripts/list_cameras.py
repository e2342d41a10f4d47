#!/usr/bin/env python3
"""
Capture device listing utility.
Prints every device the app can open and the resolution it delivers.
"""

import os
import sys
import argparse

import cv2

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.capture.camera_manager import list_devices


def probe(index):
    """Return ``(width, height)`` of the first frame, or None."""
    cap = cv2.VideoCapture(index)
    try:
        if not cap.isOpened():
            return None
        ret, frame = cap.read()
        if not ret or frame is None:
            return None
        height, width = frame.shape[:2]
        return width, height
    finally:
        cap.release()


def main(argv=None):
    parser = argparse.ArgumentParser(description="List capture devices")
    parser.add_argument("--max-probe", type=int, default=10,
                        help="Indices to probe when /dev/video* is unavailable")
    parser.add_argument("--no-read", action="store_true",
                        help="Only enumerate, do not grab a test frame")
    args = parser.parse_args(argv)

    devices = list_devices(max_probe=args.max_probe)
    if not devices:
        print("No capture devices found.")
        print("Set camera.use_webcam: false and camera.source_path in config/config.yaml")
        return 1

    for index, name in devices:
        if args.no_read:
            print("  [%d] %s" % (index, name))
            continue
        dims = probe(index)
        if dims is None:
            print("  [%d] %s  (opened but no frames)" % (index, name))
        else:
            print("  [%d] %s  %dx%d" % (index, name, dims[0], dims[1]))

    print("\nUse the index as camera.device in config/config.yaml")
    return 0


if __name__ == "__main__":
    sys.exit(main())
