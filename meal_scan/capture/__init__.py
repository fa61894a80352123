"""
Capture sources:
- camera: cv2.VideoCapture-backed still capture with permission handling
- gallery: one picked photo -> CapturedFrame
"""
