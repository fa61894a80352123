import numpy as np
import pytest

from conftest import make_frame, make_image
from meal_scan.scan_pipeline.preprocess import (
    crop_to_scan_frame,
    preprocess_frame,
    scan_crop_box,
    to_model_input,
)


def test_crop_box_scales_frame_to_pixels():
    # 3x screen: 280pt frame -> 840px square centered on the image
    assert scan_crop_box((1170, 2532), (390, 844), 280) == (165, 846, 840)


def test_crop_box_uses_larger_axis_scale():
    # landscape photo on a portrait screen: the width scale (4032/390) wins
    x, y, side = scan_crop_box((4032, 3024), (390, 844), 280)
    assert side == int(round(280 * 4032 / 390))
    assert x == (4032 - side) // 2
    assert y == (3024 - side) // 2


def test_crop_box_outside_image_is_none():
    # width scale 2000/390 makes the square 1436px, taller than the image
    assert scan_crop_box((2000, 100), (390, 844), 280) is None
    assert scan_crop_box((1170, 2532), (0, 844), 280) is None
    assert scan_crop_box((1170, 2532), (390, 844), 0) is None


def test_crop_to_scan_frame_returns_square_region():
    image = make_image(1170, 2532)
    request = crop_to_scan_frame(image, (390, 844), 280)

    assert request.cropped
    assert request.crop_box == (165, 846, 840, 840)
    assert request.image.shape == (840, 840, 3)
    assert np.array_equal(request.image, image[846:1686, 165:1005])


def test_crop_falls_back_to_full_image():
    image = make_image(2000, 100)
    request = crop_to_scan_frame(image, (390, 844), 280)

    assert not request.cropped
    assert request.crop_box is None
    assert request.image is image


def test_small_image_still_crops():
    # 200x300 scales down with the screen, so the 280pt frame still fits
    request = crop_to_scan_frame(make_image(200, 300), (390, 844), 280)
    assert request.cropped
    assert request.crop_box == (28, 78, 144, 144)


def test_crop_rejects_empty_image():
    with pytest.raises(ValueError):
        crop_to_scan_frame(np.zeros((0, 0, 3), dtype=np.uint8), (390, 844), 280)


def test_preprocess_frame_without_geometry_is_uncropped():
    frame = make_frame(640, 480, screen_size=None, frame_side=None, source="gallery")
    request = preprocess_frame(frame)
    assert not request.cropped
    assert request.image.shape == (480, 640, 3)


def test_preprocess_frame_with_geometry_is_cropped():
    request = preprocess_frame(make_frame())
    assert request.cropped


def test_model_input_is_letterboxed_and_normalized():
    image = np.full((100, 200, 3), 255, dtype=np.uint8)
    batch = to_model_input(image, (224, 224))

    assert batch.shape == (1, 3, 224, 224)
    assert batch.dtype == np.float32
    assert batch.max() <= 1.0
    # 200x100 -> 224x112, padded top and bottom
    assert batch[0, :, 0, :].max() == 0.0
    assert batch[0, :, 112, :].min() == pytest.approx(1.0)
