"""
Common Data Types

파이프라인 전체에서 공유하는 데이터 구조와 예외를 정의합니다.

- Intrinsics: 카메라 내부 파라미터 (K, K^-1, 왜곡 계수)
- ImagePair: 이미지 쌍 인덱스 (left < right)
- Track: 3D 점과 그 점을 관측한 (이미지, 키포인트) 기록
"""

import numpy as np
from typing import Callable, Dict, List
from dataclasses import dataclass, field


# 기본 초점 거리 (픽셀). 실제 보정 없이 모든 이미지에 공통으로 사용합니다.
DEFAULT_FOCAL_LENGTH = 2500.0

ProgressCallback = Callable[[str], None]


class SfMError(RuntimeError):
    """복원을 계속할 수 없는 오류의 기본 클래스"""


class EmptyInputError(SfMError):
    """입력 이미지가 하나도 없는 경우"""


class NoBaselineError(SfMError):
    """포즈 인라이어 비율을 만족하는 초기 이미지 쌍이 없는 경우"""


@dataclass
class Intrinsics:
    """
    카메라 내부 파라미터

    한 번의 실행 동안 모든 이미지가 같은 값을 공유합니다.

    Attributes:
        K: 3x3 카메라 행렬
        k_inv: K의 역행렬
        distortion: 왜곡 계수 (1x4, 기본값은 모두 0)
    """
    K: np.ndarray
    k_inv: np.ndarray = None
    distortion: np.ndarray = None

    def __post_init__(self):
        self.K = np.asarray(self.K, dtype=np.float64)
        if self.K.shape != (3, 3):
            raise ValueError(f"K는 3x3 행렬이어야 합니다: {self.K.shape}")
        if self.k_inv is None:
            self.k_inv = np.linalg.inv(self.K)
        if self.distortion is None:
            self.distortion = np.zeros((1, 4), dtype=np.float64)

    @property
    def focal(self) -> float:
        return float(self.K[0, 0])

    @property
    def principal_point(self) -> tuple:
        return float(self.K[0, 2]), float(self.K[1, 2])

    @classmethod
    def from_image_size(cls, width: int, height: int,
                        focal_length: float = DEFAULT_FOCAL_LENGTH) -> "Intrinsics":
        """
        이미지 크기와 고정 초점 거리로 기본 내부 파라미터를 생성합니다.

        주점(principal point)은 이미지 중심의 정수 좌표에 둡니다.

        Args:
            width, height: 이미지 크기
            focal_length: 초점 거리 (픽셀)

        Returns:
            Intrinsics: 생성된 내부 파라미터
        """
        K = np.array([
            [focal_length, 0, width // 2],
            [0, focal_length, height // 2],
            [0, 0, 1]
        ], dtype=np.float64)
        return cls(K=K)


@dataclass(frozen=True)
class ImagePair:
    """이미지 쌍 (left < right)"""
    left: int
    right: int

    def __post_init__(self):
        if self.left >= self.right:
            raise ValueError(f"잘못된 이미지 쌍: ({self.left}, {self.right})")

    @classmethod
    def of(cls, a: int, b: int) -> "ImagePair":
        return cls(min(a, b), max(a, b))


@dataclass
class Track:
    """
    3D 점과 관측 기록

    Attributes:
        point: 3D 좌표 (3,)
        originating_views: 이미지 인덱스 -> 해당 이미지 FeatureSet의 키포인트 인덱스
    """
    point: np.ndarray
    originating_views: Dict[int, int] = field(default_factory=dict)

    def __post_init__(self):
        if len(self.originating_views) < 2:
            raise ValueError("트랙은 최소 2개의 이미지에서 관측되어야 합니다.")

    @property
    def first_view(self) -> int:
        return min(self.originating_views)


PointCloud = List[Track]
