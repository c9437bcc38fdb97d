"""
SfM 테스트 모듈

각 모듈의 기능을 테스트합니다.
"""

import sys
import cv2
import numpy as np
from pathlib import Path
import unittest

# 프로젝트 루트를 path에 추가
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


def hamming_distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    """이진 디스크립터 간 Hamming 거리 행렬"""
    bits_a = np.unpackbits(a, axis=1).astype(np.int32)
    bits_b = np.unpackbits(b, axis=1).astype(np.int32)
    return (bits_a[:, None, :] != bits_b[None, :, :]).sum(axis=2)


def rotation_angle(R: np.ndarray) -> float:
    """회전 행렬의 회전 각도 (라디안)"""
    return float(np.arccos(np.clip((np.trace(R) - 1) / 2, -1.0, 1.0)))


class TestFeatureDetection(unittest.TestCase):
    """특징점 검출 테스트"""

    def setUp(self):
        """테스트 이미지 생성"""
        rng = np.random.default_rng(0)

        # 텍스처가 풍부한 이미지 (체커보드 + 노이즈)
        self.rich_texture = np.zeros((480, 640, 3), dtype=np.uint8)
        for i in range(0, 480, 40):
            for j in range(0, 640, 40):
                if (i // 40 + j // 40) % 2 == 0:
                    self.rich_texture[i:i+40, j:j+40] = [255, 255, 255]

        noise = rng.integers(0, 30, self.rich_texture.shape, dtype=np.uint8)
        self.rich_texture = cv2.add(self.rich_texture, noise)

        # 텍스처가 없는 이미지 (단색)
        self.no_texture = np.ones((480, 640, 3), dtype=np.uint8) * 128

    def test_orb_detection(self):
        """ORB 검출 테스트"""
        from incremental_sfm.feature_detection import FeatureDetector

        detector = FeatureDetector(algorithm="orb", nfeatures=500)
        features = detector.extract(self.rich_texture)

        self.assertGreater(len(features), 0)
        self.assertLessEqual(len(features), 500)
        self.assertEqual(features.descriptors.shape, (len(features), 32))
        self.assertEqual(features.points.shape, (len(features), 2))

    def test_sift_detection(self):
        """SIFT 검출 테스트"""
        from incremental_sfm.feature_detection import FeatureDetector

        detector = FeatureDetector(algorithm="sift", nfeatures=1000)
        features = detector.extract(self.rich_texture)

        self.assertGreater(len(features), 0)
        self.assertEqual(features.descriptors.shape[1], 128)

    def test_deterministic_extraction(self):
        """같은 이미지는 같은 특징점을 생성"""
        from incremental_sfm.feature_detection import FeatureDetector

        detector = FeatureDetector()
        first = detector.extract(self.rich_texture)
        second = detector.extract(self.rich_texture.copy())

        self.assertEqual(len(first), len(second))
        np.testing.assert_array_equal(first.points, second.points)
        np.testing.assert_array_equal(first.descriptors, second.descriptors)

    def test_no_texture_detection(self):
        """텍스처 없는 이미지는 빈 특징점 집합"""
        from incremental_sfm.feature_detection import FeatureDetector

        features = FeatureDetector().extract(self.no_texture)

        self.assertEqual(len(features), 0)
        self.assertEqual(features.descriptors.shape, (0, 32))
        self.assertEqual(features.points.shape, (0, 2))

    def test_invalid_algorithm(self):
        from incremental_sfm.feature_detection import FeatureDetector

        with self.assertRaises(ValueError):
            FeatureDetector(algorithm="surf")

    def test_mismatched_feature_set(self):
        """키포인트 수와 디스크립터 행 수가 다르면 오류"""
        from incremental_sfm.feature_detection import FeatureSet

        with self.assertRaises(ValueError):
            FeatureSet.from_points(np.zeros((3, 2)), np.zeros((2, 32), dtype=np.uint8))


class TestFeatureMatching(unittest.TestCase):
    """특징점 매칭 테스트"""

    def setUp(self):
        """테스트 데이터 생성"""
        from incremental_sfm.feature_detection import FeatureSet

        rng = np.random.default_rng(1)

        left_desc = rng.integers(0, 256, (200, 32), dtype=np.uint8)
        right_desc = rng.integers(0, 256, (300, 32), dtype=np.uint8)

        # 앞쪽 100개는 왼쪽 디스크립터에서 3비트만 바꾼 것
        right_desc[:100] = left_desc[:100]
        right_desc[:100, 0] ^= 0b00000111

        self.left_desc = left_desc
        self.right_desc = right_desc
        self.left = FeatureSet.from_points(rng.uniform(0, 640, (200, 2)), left_desc)
        self.right = FeatureSet.from_points(rng.uniform(0, 640, (300, 2)), right_desc)

    def test_ratio_test_property(self):
        """모든 매칭은 nearest < ratio * second 를 만족"""
        from incremental_sfm.feature_matching import FeatureMatcher

        matcher = FeatureMatcher(ratio_threshold=0.8)
        matches = matcher.match(self.left, self.right)
        distances = hamming_distances(self.left_desc, self.right_desc)

        self.assertGreaterEqual(len(matches), 100)
        for m in matches:
            row = np.sort(distances[m.queryIdx])
            self.assertEqual(m.distance, distances[m.queryIdx, m.trainIdx])
            self.assertEqual(m.distance, row[0])
            self.assertLess(m.distance, 0.8 * row[1])

    def test_true_correspondences_found(self):
        from incremental_sfm.feature_matching import FeatureMatcher

        matches = FeatureMatcher().match(self.left, self.right)
        found = {(m.queryIdx, m.trainIdx) for m in matches}

        for i in range(100):
            self.assertIn((i, i), found)

    def test_empty_features(self):
        """빈 특징점 집합 테스트"""
        from incremental_sfm.feature_detection import FeatureSet
        from incremental_sfm.feature_matching import FeatureMatcher

        matcher = FeatureMatcher()

        self.assertEqual(matcher.match(FeatureSet.empty(), self.right), [])
        self.assertEqual(matcher.match(self.left, FeatureSet.empty()), [])

    def test_extract_matched_points(self):
        from incremental_sfm.feature_matching import extract_matched_points

        matches = [cv2.DMatch(5, 7, 0.0), cv2.DMatch(2, 1, 0.0)]
        pts1, pts2 = extract_matched_points(self.left, self.right, matches)

        np.testing.assert_array_equal(pts1, self.left.points[[5, 2]])
        np.testing.assert_array_equal(pts2, self.right.points[[7, 1]])


class TestMatchMatrix(unittest.TestCase):
    """매칭 행렬 테스트"""

    def setUp(self):
        from incremental_sfm.synthetic import create_cube_scene

        self.scene = create_cube_scene(angles=(-0.3, -0.1, 0.1, 0.3, 0.5))

    def _compute(self, num_workers, log=None):
        from incremental_sfm.feature_matching import FeatureMatcher
        from incremental_sfm.match_matrix import MatchMatrix

        matrix = MatchMatrix(len(self.scene.features))
        matrix.compute(self.scene.features, FeatureMatcher(),
                       num_workers=num_workers, log=log)
        return matrix

    def test_worker_count_independence(self):
        """작업 스레드 수와 관계없이 같은 결과"""
        single = self._compute(1)
        multi = self._compute(4)

        self.assertEqual(len(single), 10)
        for pair, matches in single.items():
            other = multi.get(pair.left, pair.right)
            self.assertEqual(
                [(m.queryIdx, m.trainIdx, m.distance) for m in matches],
                [(m.queryIdx, m.trainIdx, m.distance) for m in other]
            )

    def test_all_points_matched(self):
        matrix = self._compute(2)
        num_points = len(self.scene.points_3d)

        for pair, matches in matrix.items():
            self.assertLess(pair.left, pair.right)
            self.assertEqual(len(matches), num_points)

    def test_progress_from_workers(self):
        messages = []
        self._compute(3, log=messages.append)

        # 시작 메시지 + 쌍마다 하나
        self.assertEqual(len(messages), 11)

    def test_symmetric_lookup(self):
        matrix = self._compute(2)
        self.assertIs(matrix.get(3, 1), matrix.get(1, 3))
        with self.assertRaises(ValueError):
            matrix.get(2, 2)

    def test_replace_only_shrinks(self):
        matrix = self._compute(2)
        matches = matrix.get(0, 1)

        matrix.replace(0, 1, matches[:10])
        self.assertEqual(len(matrix.get(0, 1)), 10)

        # 제거된 매칭을 다시 넣을 수 없음
        with self.assertRaises(ValueError):
            matrix.replace(0, 1, matches[:20])

    def test_partition_pairs(self):
        from incremental_sfm.common import ImagePair
        from incremental_sfm.match_matrix import partition_pairs

        pairs = [ImagePair(i, j) for i in range(4) for j in range(i + 1, 5)]

        chunks = partition_pairs(pairs, 3)
        self.assertEqual([len(c) for c in chunks], [4, 4, 2])
        self.assertEqual([p for c in chunks for p in c], pairs)

        self.assertEqual(len(partition_pairs(pairs, 50)), len(pairs))
        self.assertEqual(partition_pairs([], 4), [])

    def test_default_num_workers(self):
        from incremental_sfm.match_matrix import default_num_workers

        self.assertGreaterEqual(default_num_workers(), 1)


class TestHomography(unittest.TestCase):
    """호모그래피 테스트"""

    def test_planar_scene(self):
        """평면 위의 점은 대부분 호모그래피 인라이어"""
        from incremental_sfm.feature_matching import FeatureMatcher
        from incremental_sfm.homography import HomographyEstimator
        from incremental_sfm.synthetic import create_view_features, orbit_pose
        from incremental_sfm.common import Intrinsics

        rng = np.random.default_rng(5)
        plane = np.column_stack([rng.uniform(-1, 1, (150, 2)), np.zeros(150)])
        K = Intrinsics.from_image_size(640, 480, 800.0).K
        left, right = create_view_features(K, [orbit_pose(-0.2), orbit_pose(0.2)], plane)

        matches = FeatureMatcher().match(left, right)
        ratio = HomographyEstimator().inlier_ratio(left, right, matches)

        self.assertGreater(ratio, 0.95)

    def test_too_few_matches(self):
        from incremental_sfm.homography import HomographyEstimator
        from incremental_sfm.synthetic import create_cube_scene

        scene = create_cube_scene(shuffle=False)
        left, right = scene.features[0], scene.features[1]
        matches = [cv2.DMatch(i, i, 0.0) for i in range(3)]

        self.assertEqual(HomographyEstimator().count_inliers(left, right, matches), 0)
        self.assertEqual(HomographyEstimator().inlier_ratio(left, right, []), 0.0)


class TestCameraPose(unittest.TestCase):
    """카메라 포즈 추정 테스트"""

    def setUp(self):
        from incremental_sfm.synthetic import create_cube_scene

        self.scene = create_cube_scene(angles=(-0.2, 0.25), shuffle=False)
        n = len(self.scene.points_3d)
        self.matches = [cv2.DMatch(i, i, 0.0) for i in range(n)]

    def test_relative_pose(self):
        """상대 포즈 추정 정확도 테스트"""
        from incremental_sfm.camera_pose import CameraPoseEstimator

        left, right = self.scene.features
        result = CameraPoseEstimator().estimate_relative_pose(
            self.scene.intrinsics, self.matches, left, right
        )

        self.assertIsNotNone(result)
        self.assertGreater(len(result.matches) / len(self.matches), 0.9)
        np.testing.assert_allclose(result.pose_left.matrix, np.hstack([np.eye(3), np.zeros((3, 1))]))

        # Ground truth 상대 포즈
        pose1, pose2 = self.scene.poses
        true_R = pose2.R @ pose1.R.T
        true_t = pose2.t - true_R @ pose1.t

        self.assertLess(rotation_angle(result.pose_right.R.T @ true_R), 1e-3)

        # t는 스케일까지만 복원 가능
        t_est = result.pose_right.t.ravel() / np.linalg.norm(result.pose_right.t)
        t_true = true_t.ravel() / np.linalg.norm(true_t)
        self.assertLess(np.linalg.norm(t_est - t_true), 1e-3)

    def test_relative_pose_pruned_subset(self):
        from incremental_sfm.camera_pose import CameraPoseEstimator

        left, right = self.scene.features
        result = CameraPoseEstimator().estimate_relative_pose(
            self.scene.intrinsics, self.matches, left, right
        )
        original = {(m.queryIdx, m.trainIdx) for m in self.matches}
        for m in result.matches:
            self.assertIn((m.queryIdx, m.trainIdx), original)

    def test_relative_pose_too_few_matches(self):
        from incremental_sfm.camera_pose import CameraPoseEstimator

        left, right = self.scene.features
        result = CameraPoseEstimator().estimate_relative_pose(
            self.scene.intrinsics, self.matches[:4], left, right
        )
        self.assertIsNone(result)

    def test_pose_from_correspondences(self):
        """PnP 포즈 추정 테스트"""
        from incremental_sfm.camera_pose import CameraPoseEstimator

        pose = CameraPoseEstimator().estimate_pose_from_correspondences(
            self.scene.intrinsics,
            self.scene.features[1].points,
            self.scene.points_3d
        )

        self.assertIsNotNone(pose)
        true_pose = self.scene.poses[1]
        self.assertLess(rotation_angle(pose.R.T @ true_pose.R), 1e-3)
        np.testing.assert_allclose(pose.t, true_pose.t, atol=1e-3)

    def test_pose_from_too_few_correspondences(self):
        from incremental_sfm.camera_pose import CameraPoseEstimator

        pose = CameraPoseEstimator().estimate_pose_from_correspondences(
            self.scene.intrinsics,
            self.scene.features[1].points[:5],
            self.scene.points_3d[:5]
        )
        self.assertIsNone(pose)

    def test_pose_matrix_round_trip(self):
        from incremental_sfm.camera_pose import CameraPose

        pose = self.scene.poses[1]
        again = CameraPose.from_matrix(pose.matrix)

        np.testing.assert_allclose(again.R, pose.R)
        np.testing.assert_allclose(again.t, pose.t)
        np.testing.assert_allclose(pose.R @ pose.center + pose.t.ravel(), np.zeros(3), atol=1e-9)


class TestTriangulation(unittest.TestCase):
    """삼각측량 테스트"""

    def setUp(self):
        from incremental_sfm.synthetic import create_cube_scene

        self.scene = create_cube_scene(angles=(-0.2, 0.25), shuffle=False)
        n = len(self.scene.points_3d)
        self.matches = [cv2.DMatch(i, i, 0.0) for i in range(n)]

    def test_triangulation_accuracy(self):
        """노이즈 없는 대응은 정확히 복원되고 모두 재투영 검사 통과"""
        from incremental_sfm.common import ImagePair
        from incremental_sfm.triangulation import Triangulator

        left, right = self.scene.features
        pose_left, pose_right = self.scene.poses
        tracks = Triangulator().triangulate_views(
            self.scene.intrinsics, ImagePair(0, 1), self.matches,
            left, right, pose_left, pose_right
        )

        self.assertEqual(len(tracks), len(self.matches))
        for track in tracks:
            self.assertEqual(set(track.originating_views), {0, 1})
            index = track.originating_views[0]
            self.assertEqual(track.originating_views[1], index)
            np.testing.assert_allclose(track.point, self.scene.points_3d[index], atol=1e-6)

    def test_reprojection_filter(self):
        """재투영 에러가 큰 점은 제거"""
        from incremental_sfm.common import ImagePair
        from incremental_sfm.feature_detection import FeatureSet
        from incremental_sfm.triangulation import Triangulator

        left, right = self.scene.features
        shifted = right.points.copy()
        shifted[3] += [0.0, 60.0]
        right = FeatureSet.from_points(shifted, right.descriptors)

        tracks = Triangulator().triangulate_views(
            self.scene.intrinsics, ImagePair(0, 1), self.matches,
            left, right, *self.scene.poses
        )

        kept = {track.originating_views[0] for track in tracks}
        self.assertNotIn(3, kept)
        self.assertEqual(len(kept), len(self.matches) - 1)

    def test_back_references(self):
        """트랙은 정렬 전 원래 키포인트 인덱스를 기록"""
        from incremental_sfm.common import ImagePair
        from incremental_sfm.triangulation import Triangulator

        left, right = self.scene.features
        matches = [cv2.DMatch(17, 17, 0.0), cv2.DMatch(4, 4, 0.0)]
        tracks = Triangulator().triangulate_views(
            self.scene.intrinsics, ImagePair(2, 5), matches,
            left, right, *self.scene.poses
        )

        self.assertEqual([t.originating_views for t in tracks],
                         [{2: 17, 5: 17}, {2: 4, 5: 4}])

    def test_empty_matches(self):
        from incremental_sfm.common import ImagePair
        from incremental_sfm.triangulation import Triangulator

        tracks = Triangulator().triangulate_views(
            self.scene.intrinsics, ImagePair(0, 1), [],
            *self.scene.features, *self.scene.poses
        )
        self.assertEqual(tracks, [])


class TestCommon(unittest.TestCase):
    """공통 데이터 구조 테스트"""

    def test_default_intrinsics(self):
        from incremental_sfm.common import Intrinsics

        intrinsics = Intrinsics.from_image_size(640, 480)

        self.assertEqual(intrinsics.focal, 2500.0)
        self.assertEqual(intrinsics.principal_point, (320.0, 240.0))
        np.testing.assert_allclose(intrinsics.k_inv @ intrinsics.K, np.eye(3), atol=1e-12)
        np.testing.assert_array_equal(intrinsics.distortion, np.zeros((1, 4)))

    def test_default_intrinsics_odd_size(self):
        """홀수 크기 이미지의 주점은 정수 중심"""
        from incremental_sfm.common import Intrinsics

        intrinsics = Intrinsics.from_image_size(641, 481)
        self.assertEqual(intrinsics.principal_point, (320.0, 240.0))

    def test_image_pair_order(self):
        from incremental_sfm.common import ImagePair

        self.assertEqual(ImagePair.of(4, 1), ImagePair(1, 4))
        with self.assertRaises(ValueError):
            ImagePair(2, 2)

    def test_track_needs_two_views(self):
        from incremental_sfm.common import Track

        with self.assertRaises(ValueError):
            Track(point=np.zeros(3), originating_views={0: 1})

        track = Track(point=np.zeros(3), originating_views={3: 1, 1: 8})
        self.assertEqual(track.first_view, 1)


if __name__ == "__main__":
    unittest.main(verbosity=2)
