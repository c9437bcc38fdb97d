"""
Synthetic Scene Module

실제 이미지 없이 알고리즘을 시험하기 위한 합성 데이터를 생성합니다.

큐브 표면의 3D 점을 여러 가상 카메라에 투영하고, 점마다 고유한 이진
디스크립터를 부여해 노이즈 없는 정확한 대응을 가진 FeatureSet을 만듭니다.
"""

import cv2
import numpy as np
from typing import List, Sequence
from dataclasses import dataclass

from .camera_pose import CameraPose
from .common import Intrinsics
from .feature_detection import FeatureSet


# ORB 디스크립터 크기 (바이트)
DESCRIPTOR_BYTES = 32


def create_cube_points(num_surface_points: int = 192,
                       half_size: float = 1.0,
                       seed: int = 42) -> np.ndarray:
    """
    큐브의 꼭짓점 8개와 표면 위 임의의 점을 생성합니다.

    Returns:
        np.ndarray: Nx3 점 (앞 8개가 꼭짓점)
    """
    rng = np.random.default_rng(seed)

    corners = np.array([[x, y, z]
                        for x in (-1, 1) for y in (-1, 1) for z in (-1, 1)],
                       dtype=np.float64)

    surface = rng.uniform(-1.0, 1.0, (num_surface_points, 3))
    axes = rng.integers(0, 3, num_surface_points)
    signs = rng.choice([-1.0, 1.0], num_surface_points)
    surface[np.arange(num_surface_points), axes] = signs

    return np.vstack([corners, surface]) * half_size


def orbit_pose(angle: float, distance: float = 6.0) -> CameraPose:
    """
    원점을 바라보며 y축 주위를 도는 카메라의 포즈를 만듭니다.

    angle = 0 이면 카메라 중심은 (0, 0, -distance) 입니다.
    """
    R, _ = cv2.Rodrigues(np.array([0.0, angle, 0.0]))
    center = np.array([distance * np.sin(angle), 0.0, -distance * np.cos(angle)])
    return CameraPose(R=R, t=-R @ center)


def project_points(K: np.ndarray, pose: CameraPose, points_3d: np.ndarray) -> np.ndarray:
    """3D 점을 이미지 평면에 투영합니다 (Nx2)."""
    P = pose.to_projection_matrix(K)
    points_h = np.hstack([points_3d, np.ones((len(points_3d), 1))])
    projected = (P @ points_h.T).T
    return projected[:, :2] / projected[:, 2:3]


def create_descriptors(num_points: int, seed: int = 7) -> np.ndarray:
    """점마다 고유한 임의의 이진 디스크립터"""
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, (num_points, DESCRIPTOR_BYTES), dtype=np.uint8)


def create_view_features(K: np.ndarray,
                         poses: Sequence[CameraPose],
                         points_3d: np.ndarray,
                         seed: int = 0,
                         shuffle: bool = True) -> List[FeatureSet]:
    """
    각 카메라에서 본 합성 특징점을 생성합니다.

    같은 3D 점은 모든 이미지에서 같은 디스크립터를 가지므로
    ratio test에서 정확한 대응만 남습니다. shuffle이면 이미지마다
    키포인트 순서를 섞습니다.

    Returns:
        List[FeatureSet]: 이미지별 특징점
    """
    rng = np.random.default_rng(seed)
    descriptors = create_descriptors(len(points_3d), seed=seed + 7)

    features = []
    for pose in poses:
        points_2d = project_points(K, pose, points_3d)
        order = rng.permutation(len(points_3d)) if shuffle else np.arange(len(points_3d))
        features.append(FeatureSet.from_points(points_2d[order], descriptors[order]))
    return features


def create_isolated_features(num_points: int,
                             width: int = 640,
                             height: int = 480,
                             seed: int = 99) -> FeatureSet:
    """
    다른 이미지와 어떤 매칭도 만들지 않는 특징점을 생성합니다.

    모든 디스크립터가 같으므로 이 이미지를 train 쪽으로 하는 매칭에서
    최근접 거리와 두 번째 거리가 같아 ratio test를 통과하지 못합니다.
    """
    rng = np.random.default_rng(seed)
    points = np.column_stack([rng.uniform(0, width, num_points),
                              rng.uniform(0, height, num_points)])
    descriptors = np.full((num_points, DESCRIPTOR_BYTES), 0xAA, dtype=np.uint8)
    return FeatureSet.from_points(points, descriptors)


def create_color_images(num_images: int,
                        width: int = 640,
                        height: int = 480,
                        seed: int = 3) -> List[np.ndarray]:
    """색상 추출용 임의 BGR 이미지"""
    rng = np.random.default_rng(seed)
    return [rng.integers(0, 256, (height, width, 3), dtype=np.uint8)
            for _ in range(num_images)]


@dataclass
class SyntheticScene:
    """합성 장면 (정답 포즈와 3D 점 포함)"""
    intrinsics: Intrinsics
    poses: List[CameraPose]
    points_3d: np.ndarray
    features: List[FeatureSet]


def create_cube_scene(angles: Sequence[float] = (-0.25, 0.0, 0.35),
                      distance: float = 6.0,
                      focal_length: float = 800.0,
                      width: int = 640,
                      height: int = 480,
                      num_surface_points: int = 192,
                      seed: int = 42,
                      shuffle: bool = True) -> SyntheticScene:
    """
    큐브 주위를 도는 카메라들로 합성 장면을 만듭니다.

    Args:
        angles: 카메라별 y축 회전 각도 (라디안)
        distance: 큐브 중심에서 카메라까지의 거리
        focal_length: 초점 거리 (픽셀)
        width, height: 이미지 크기

    Returns:
        SyntheticScene: 합성 장면
    """
    intrinsics = Intrinsics.from_image_size(width, height, focal_length)
    poses = [orbit_pose(angle, distance) for angle in angles]
    points_3d = create_cube_points(num_surface_points, seed=seed)
    features = create_view_features(intrinsics.K, poses, points_3d,
                                    seed=seed, shuffle=shuffle)
    return SyntheticScene(intrinsics=intrinsics, poses=poses,
                          points_3d=points_3d, features=features)
