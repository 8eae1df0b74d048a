"""Tests for PixelBuffer."""
import numpy as np
import pytest

from pixels import PixelBuffer, argb, unpack


class TestPixelBuffer:
    def test_starts_transparent(self):
        buf = PixelBuffer(4, 3)
        assert buf.data.shape == (12,)
        assert not buf.data.any()

    @pytest.mark.parametrize("x,y", [(-0.5, 0), (0, -0.9), (-0.01, -0.01), (4.2, 1), (1, 3.0)])
    def test_fractional_out_of_bounds_is_dropped(self, x, y):
        buf = PixelBuffer(4, 3)
        buf.set(x, y, 0xFFFFFFFF)
        assert not buf.data.any()
        buf.clear(0xFF112233)
        assert buf.get(x, y) == 0

    def test_fractional_inside_floors(self):
        buf = PixelBuffer(4, 3)
        buf.set(1.9, 2.2, 0xFF00FF00)
        assert buf.get(1, 2) == 0xFF00FF00

    def test_set_get_row_major(self):
        buf = PixelBuffer(4, 3)
        buf.set(1, 2, 0xFF112233)
        assert buf.get(1, 2) == 0xFF112233
        assert buf.data[2 * 4 + 1] == 0xFF112233

    @pytest.mark.parametrize("x,y", [(-1, 0), (0, -1), (4, 0), (0, 3), (100, 100)])
    def test_out_of_bounds_is_silent(self, x, y):
        buf = PixelBuffer(4, 3)
        buf.set(x, y, 0xFFFFFFFF)
        assert buf.get(x, y) == 0
        assert not buf.data.any()

    def test_clear(self):
        buf = PixelBuffer(3, 3)
        buf.clear(argb(255, 1, 2, 3))
        assert set(buf.data.tolist()) == {0xFF010203}

    def test_negative_size_rejected(self):
        with pytest.raises(ValueError):
            PixelBuffer(-1, 4)

    def test_zero_size_allowed(self):
        buf = PixelBuffer(0, 5)
        assert buf.empty
        assert buf.get(0, 0) == 0

    def test_blit_skips_transparent_and_clips(self):
        dst = PixelBuffer(4, 4)
        dst.clear(0xFF0000FF)
        src = PixelBuffer(3, 3)
        src.set(0, 0, 0xFFFF0000)
        src.set(2, 2, 0x80FF0000)  # partial alpha still copies
        dst.blit(src, 2, 2)
        assert dst.get(2, 2) == 0xFFFF0000
        assert dst.get(3, 3) == 0xFF0000FF  # src (1,1) was transparent
        assert dst.get(3, 2) == 0xFF0000FF

    def test_blit_negative_offset(self):
        dst = PixelBuffer(4, 4)
        src = PixelBuffer(3, 3)
        src.clear(0xFF00FF00)
        dst.blit(src, -2, -2)
        assert dst.get(0, 0) == 0xFF00FF00
        assert dst.get(1, 0) == 0
        assert int((dst.data != 0).sum()) == 1

    def test_blit_fully_outside(self):
        dst = PixelBuffer(4, 4)
        src = PixelBuffer(2, 2)
        src.clear(0xFFFFFFFF)
        dst.blit(src, 10, -10)
        assert not dst.data.any()

    def test_to_image_is_rgba_alpha_last(self):
        buf = PixelBuffer(2, 1)
        buf.set(0, 0, argb(128, 10, 20, 30))
        img = buf.to_image()
        assert img.mode == "RGBA"
        assert img.size == (2, 1)
        assert img.getpixel((0, 0)) == (10, 20, 30, 128)
        assert img.getpixel((1, 0)) == (0, 0, 0, 0)
        assert buf.to_rgba_bytes()[:4] == bytes([10, 20, 30, 128])

    def test_image_round_trip(self, noisy_buffer):
        back = PixelBuffer.from_image(noisy_buffer.to_image())
        assert back == noisy_buffer

    def test_copy_is_independent(self):
        buf = PixelBuffer(2, 2)
        dup = buf.copy()
        dup.set(0, 0, 0xFFFFFFFF)
        assert buf.get(0, 0) == 0

    def test_unpack(self):
        a, r, g, b = unpack(np.array([0x80102030], dtype=np.uint32))
        assert (a[0], r[0], g[0], b[0]) == (0x80, 0x10, 0x20, 0x30)
