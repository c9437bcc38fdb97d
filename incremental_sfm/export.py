"""
Export Module

복원 결과를 파일로 저장합니다.

- PLY (ASCII): 트랙당 정점 하나, x y z red green blue
- 카메라 포즈 (텍스트): 이미지당 한 줄, 인덱스와 3x4 [R | t]
"""

import numpy as np
from typing import Dict, Sequence, Tuple

from .camera_pose import CameraPose
from .common import PointCloud, Track
from .feature_detection import FeatureSet


class ColorSource:
    """
    트랙 색상 추출기

    트랙을 관측한 첫 번째(인덱스가 가장 작은) 이미지에서 해당 키포인트
    위치의 픽셀 색을 가져옵니다.
    """

    def __init__(self, images: Sequence[np.ndarray], features: Sequence[FeatureSet]):
        if len(images) != len(features):
            raise ValueError("이미지 수와 특징점 집합 수가 다릅니다.")
        self.images = images
        self.features = features

    def color_of(self, track: Track) -> Tuple[int, int, int]:
        """트랙의 RGB 색상"""
        view = track.first_view
        image = self.images[view]
        x, y = self.features[view].points[track.originating_views[view]]

        x = min(max(int(round(x)), 0), image.shape[1] - 1)
        y = min(max(int(round(y)), 0), image.shape[0] - 1)

        if image.ndim == 2:
            gray = int(image[y, x])
            return gray, gray, gray

        # BGR -> RGB
        bgr = image[y, x]
        return int(bgr[2]), int(bgr[1]), int(bgr[0])


def export_to_ply(output_path: str, cloud: PointCloud, color_source: ColorSource) -> None:
    """
    포인트 클라우드를 ASCII PLY 형식으로 저장합니다.

    같은 입력에 대해서는 항상 같은 파일을 씁니다.

    Args:
        output_path: 출력 파일 경로
        cloud: 트랙 리스트
        color_source: 트랙 색상 추출기
    """
    with open(output_path, "w", newline="\n") as f:
        # 헤더
        f.write("ply\n")
        f.write("format ascii 1.0\n")
        f.write(f"element vertex {len(cloud)}\n")
        f.write("property float x\n")
        f.write("property float y\n")
        f.write("property float z\n")
        f.write("property uchar red\n")
        f.write("property uchar green\n")
        f.write("property uchar blue\n")
        f.write("end_header\n")

        # 데이터
        for track in cloud:
            x, y, z = track.point
            r, g, b = color_source.color_of(track)
            f.write(f"{x:.6f} {y:.6f} {z:.6f} {r} {g} {b}\n")


def save_camera_poses(output_path: str, poses: Dict[int, CameraPose]) -> None:
    """
    카메라 포즈를 텍스트로 저장합니다.

    한 줄에 이미지 인덱스와 [R | t] 의 12개 값을 행 우선으로 씁니다.
    """
    with open(output_path, "w", newline="\n") as f:
        for view in sorted(poses):
            values = " ".join(f"{v:.9f}" for v in poses[view].matrix.ravel())
            f.write(f"{view} {values}\n")
