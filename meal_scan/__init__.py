"""Meal photo scanning: capture, classify, confirm and log meals."""
