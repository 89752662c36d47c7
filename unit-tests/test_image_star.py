"""
Unit tests for 2D stars, image stars and the convolution feature maps.
"""

import unittest

import torch
import torch.nn.functional as F

from constraints import LinearConstraints
from relaxations import Star
from image_star import Star2D, ImageStar, feature_map_size, compute_feature_map
from exceptions import DimensionError, ShapeError, ConstraintMismatchError

DTYPE = torch.float64


def random_box_image(num_channels, height, width):
    IM = torch.rand((height, width, num_channels), dtype=DTYPE)
    delta = 0.1 * torch.rand((height, width, num_channels), dtype=DTYPE)
    return ImageStar.from_box_bounds(IM, -delta, delta)


def sample_points(star, num_samples):
    # All free variables of box image stars range over [-1, 1]
    alpha = 2 * torch.rand((num_samples, star.num_variables), dtype=DTYPE) - 1
    return alpha, star.a0 + alpha.matmul(star.A)


class TestFeatureMap(unittest.TestCase):

    def test_feature_map_size(self):
        self.assertEqual(feature_map_size(5, 3, 1, 1), 3)
        self.assertEqual(feature_map_size(7, 3, 2, 1), 3)
        self.assertEqual(feature_map_size(7, 3, 1, 2), 3)
        self.assertEqual(feature_map_size(6, 2, 2, 1), 3)

    def test_filter_larger_than_input(self):
        with self.assertRaises(DimensionError):
            feature_map_size(2, 3)
        with self.assertRaises(DimensionError):
            compute_feature_map(torch.zeros((2, 2)), torch.ones((3, 3)))

    def test_compute_feature_map(self):
        x = torch.arange(9, dtype=DTYPE).view(3, 3)
        y = compute_feature_map(x, torch.ones((2, 2)))

        self.assertTrue(torch.equal(y, torch.tensor([[8.0, 12.0], [20.0, 24.0]], dtype=DTYPE)))

    def test_compute_feature_map_batch_with_stride_and_dilation(self):
        x = torch.rand((4, 7, 7), dtype=DTYPE)
        W = torch.rand((3, 3), dtype=DTYPE)
        y = compute_feature_map(x, W, stride=2, dilation=2)

        self.assertEqual(y.shape, (4, 2, 2))
        self.assertAlmostEqual(y[1, 1, 0].item(), (x[1, 2:7:2, 0:5:2] * W).sum().item())


class TestStar2D(unittest.TestCase):

    def setUp(self):
        torch.manual_seed(1)
        self.star = Star.from_box(torch.zeros(6), torch.ones(6))
        self.s2d = Star2D.from_star(self.star, 2, 3)

    def test_round_trip(self):
        star = self.s2d.to_star()

        self.assertTrue(torch.equal(star.a0, self.star.a0))
        self.assertTrue(torch.equal(star.A, self.star.A))
        self.assertIs(star.constraints, self.star.constraints)

    def test_round_trip_through_star(self):
        s2d = Star2D(torch.rand((4, 2, 3), dtype=DTYPE), LinearConstraints.unit_box(3))
        again = s2d.to_star().to_star2d(2, 3)

        self.assertTrue(torch.equal(again.V, s2d.V))

    def test_from_star_wrong_size(self):
        with self.assertRaises(ShapeError):
            Star2D.from_star(self.star, 4, 2)

    def test_basis_count_must_match_variables(self):
        with self.assertRaises(DimensionError):
            Star2D(torch.zeros((3, 2, 2)), LinearConstraints.unit_box(3))
        with self.assertRaises(DimensionError):
            Star2D([torch.zeros((2, 2)), torch.zeros((2, 3))], LinearConstraints.unit_box(1))

    def test_sum(self):
        total = self.s2d.sum(self.s2d)
        self.assertTrue(torch.equal(total.V, 2 * self.s2d.V))

    def test_sum_mismatch(self):
        constraints = self.s2d.constraints.add_halfspace(torch.ones(6), torch.ones(1))
        other = Star2D(self.s2d.V, constraints)

        with self.assertRaises(ConstraintMismatchError):
            self.s2d.sum(other)

        with self.assertRaises(DimensionError):
            self.s2d.sum(Star2D(torch.zeros((7, 3, 2)), self.s2d.constraints))

    def test_translate_and_padding(self):
        shifted = self.s2d.translate(1.0)
        self.assertTrue(torch.equal(shifted.V[0], self.s2d.V[0] + 1))
        self.assertTrue(torch.equal(shifted.V[1:], self.s2d.V[1:]))

        padded = self.s2d.zero_padding(1, 0, 0, 2)
        self.assertEqual(padded.dim, (3, 5))
        self.assertTrue(torch.equal(padded.V[:, 1:, :3], self.s2d.V))


class TestImageStar(unittest.TestCase):

    def setUp(self):
        torch.manual_seed(2)
        self.image = random_box_image(2, 4, 4)

    def test_box_channels_share_constraints(self):
        constraints = [s.constraints for s in self.image.star2ds]

        self.assertEqual(self.image.shape, (2, 4, 4))
        self.assertIs(constraints[0], constraints[1])
        self.assertEqual(self.image.num_variables, 32)

    def test_to_star_matches_box(self):
        lb, ub = self.image.to_star().estimate_bounds()
        lb_box = (self.image.IM + self.image.LB).permute(2, 0, 1).reshape(-1)
        ub_box = (self.image.IM + self.image.UB).permute(2, 0, 1).reshape(-1)

        self.assertTrue(torch.allclose(lb, lb_box))
        self.assertTrue(torch.allclose(ub, ub_box))

    def test_box_shape_mismatch(self):
        with self.assertRaises(DimensionError):
            ImageStar.from_box_bounds(torch.zeros((2, 2)), torch.zeros((2, 3)), torch.zeros((2, 2)))

    def test_single_channel_box(self):
        image = ImageStar.from_box_bounds(torch.zeros((3, 3)), -torch.ones((3, 3)), torch.ones((3, 3)))
        self.assertEqual(image.shape, (1, 3, 3))
        self.assertEqual(image.IM.shape, (3, 3, 1))

    def test_zero_padding_noop(self):
        padded = self.image.zero_padding(0, 0, 0, 0)

        self.assertTrue(torch.equal(padded.IM, self.image.IM))
        self.assertTrue(torch.equal(padded.LB, self.image.LB))
        self.assertTrue(torch.equal(padded.UB, self.image.UB))
        for s_new, s in zip(padded.star2ds, self.image.star2ds):
            self.assertTrue(torch.equal(s_new.V, s.V))

    def test_zero_padding(self):
        padded = self.image.zero_padding(1, 2, 0, 1)

        self.assertEqual(padded.shape, (2, 7, 5))
        self.assertEqual(padded.IM.shape, (7, 5, 2))
        self.assertTrue((padded.IM[0] == 0).all())

        with self.assertRaises(ValueError):
            self.image.zero_padding(-1, 0, 0, 0)

    def test_extract_channel(self):
        channel = self.image.extract_channel(1)

        self.assertEqual(channel.shape, (1, 4, 4))
        self.assertTrue(torch.equal(channel.IM[:, :, 0], self.image.IM[:, :, 1]))
        self.assertIs(channel.star2ds[0].constraints, self.image.star2ds[0].constraints)

        with self.assertRaises(IndexError):
            self.image.extract_channel(2)
        with self.assertRaises(ValueError):
            ImageStar.empty().extract_channel(0)

    def test_convolve_matches_conv2d(self):
        W = torch.rand((3, 2, 3, 3), dtype=DTYPE) - 0.5
        b = torch.rand(3, dtype=DTYPE)

        for padding, stride, dilation in [(1, 1, 1), (0, 2, 1), ((1, 2), 1, 2)]:
            with self.subTest(padding=padding, stride=stride, dilation=dilation):
                output = self.image.convolve(W, padding, stride, dilation, b)
                self.assertFalse(output.has_box_representation)

                alpha, x = sample_points(self.image.to_star(), 10)
                y = F.conv2d(x.view(-1, 2, 4, 4), W, b, stride, padding, dilation)

                self.assertEqual(output.shape, tuple(y.shape[1:]))

                out_star = output.to_star()
                y_star = out_star.a0 + alpha.matmul(out_star.A)
                self.assertTrue(torch.allclose(y_star, y.reshape(10, -1)))

    def test_convolve_parallel(self):
        W = torch.rand((4, 2, 2, 2), dtype=DTYPE)
        sequential = self.image.convolve(W, n_jobs=1).to_star()
        parallel = self.image.convolve(W, n_jobs=2).to_star()

        self.assertTrue(torch.allclose(sequential.a0, parallel.a0))
        self.assertTrue(torch.allclose(sequential.A, parallel.A))

    def test_convolve_channel_mismatch(self):
        with self.assertRaises(DimensionError):
            self.image.convolve(torch.ones((1, 3, 2, 2)))

    def test_convolve_independent_channels(self):
        # Channels over different predicates cannot be summed
        first = random_box_image(1, 3, 3).star2ds[0]
        second = Star2D(first.V, first.constraints.add_halfspace(torch.ones(9), torch.ones(1)))
        image = ImageStar.from_per_channel_sets([first, second])

        with self.assertRaises(ConstraintMismatchError):
            image.convolve(torch.ones((1, 2, 2, 2)))

    def test_average_pooling(self):
        output = self.image.average_pooling(2)
        alpha, x = sample_points(self.image.to_star(), 10)
        y = F.avg_pool2d(x.view(-1, 2, 4, 4), 2)

        out_star = output.to_star()
        self.assertEqual(output.shape, (2, 2, 2))
        self.assertTrue(torch.allclose(out_star.a0 + alpha.matmul(out_star.A), y.reshape(10, -1)))

    def test_estimate_bounds(self):
        lb, ub = self.image.estimate_bounds()
        self.assertTrue(torch.allclose(lb, self.image.IM + self.image.LB))

        lb_conv, ub_conv = self.image.convolve(torch.ones((1, 2, 1, 1))).estimate_bounds()
        self.assertEqual(lb_conv.shape, (4, 4, 1))
        self.assertTrue((lb_conv <= ub_conv).all())

    def test_factories(self):
        stars = self.image.to_stars()
        image = ImageStar.from_flattened(stars, 4, 4)
        self.assertEqual(image.shape, (2, 4, 4))
        self.assertFalse(image.has_box_representation)

        image = ImageStar.from_star(self.image.to_star(), 2, 4, 4)
        self.assertTrue(torch.equal(image.star2ds[1].V, self.image.star2ds[1].V))

        with self.assertRaises(ShapeError):
            ImageStar.from_star(self.image.to_star(), 3, 4, 4)

        self.assertTrue(ImageStar.empty().is_empty)


if __name__ == '__main__':
    unittest.main()
