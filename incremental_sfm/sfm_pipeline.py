"""
Structure from Motion Pipeline

전체 SfM 파이프라인을 통합하는 메인 모듈입니다.

파이프라인 흐름:
1. 이미지 로드 (호출자 또는 load_image_dir)
2. 특징점 검출 (ORB/SIFT)
3. 모든 이미지 쌍의 특징점 매칭 (병렬)
4. 초기 쌍 선택, 상대 포즈 추정, 삼각측량
5. 나머지 이미지를 PnP로 하나씩 추가하며 삼각측량
"""

import sys
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

import cv2
import numpy as np
from typing import List, Optional, Sequence

from .common import EmptyInputError, Intrinsics, ProgressCallback, SfMError, DEFAULT_FOCAL_LENGTH
from .camera_pose import CameraPoseEstimator
from .feature_detection import DEFAULT_NUM_FEATURES, FeatureDetector, FeatureSet
from .feature_matching import DEFAULT_RATIO_THRESHOLD, FeatureMatcher
from .homography import DEFAULT_RANSAC_THRESHOLD, HomographyEstimator
from .match_matrix import MatchMatrix
from .reconstruction import (
    MIN_POINTS_FOR_HOMOGRAPHY, POSE_INLIER_MIN_RATIO,
    ReconstructionResult, ReconstructionState,
)
from .triangulation import DEFAULT_MAX_REPROJECTION_ERROR, Triangulator


class SfMPipeline:
    """
    Structure from Motion 파이프라인

    여러 이미지로부터 희소 3D 포인트 클라우드와 이미지별 카메라 포즈를
    생성합니다. 매칭 단계만 작업 스레드를 사용하고 나머지 단계는
    호출한 스레드에서 실행됩니다.

    Attributes:
        intrinsics: 카메라 내부 파라미터 (None이면 첫 이미지 크기로 생성)
        feature_algorithm: 특징점 알고리즘 ("orb" 또는 "sift")
        num_workers: 매칭 작업 스레드 수 (None이면 하드웨어 스레드 수 - 1)
        progress: 진행 상황 콜백

    Example:
        >>> pipeline = SfMPipeline()
        >>> result = pipeline.run(load_image_dir("assets/"))
        >>> print(f"복원된 3D 점: {len(result.cloud)}개")
    """

    def __init__(self,
                 intrinsics: Optional[Intrinsics] = None,
                 feature_algorithm: str = "orb",
                 nfeatures: int = DEFAULT_NUM_FEATURES,
                 ratio_threshold: float = DEFAULT_RATIO_THRESHOLD,
                 num_workers: Optional[int] = None,
                 min_points_for_homography: int = MIN_POINTS_FOR_HOMOGRAPHY,
                 pose_inlier_min_ratio: float = POSE_INLIER_MIN_RATIO,
                 homography_ransac_threshold: float = DEFAULT_RANSAC_THRESHOLD,
                 max_reprojection_error: float = DEFAULT_MAX_REPROJECTION_ERROR,
                 focal_length: float = DEFAULT_FOCAL_LENGTH,
                 progress: Optional[ProgressCallback] = print):
        """
        SfM 파이프라인 초기화

        Args:
            intrinsics: 카메라 내부 파라미터
            feature_algorithm: "orb" 또는 "sift"
            nfeatures: 이미지당 최대 특징점 수
            ratio_threshold: Lowe's ratio test 임계값
            num_workers: 매칭 작업 스레드 수
            min_points_for_homography: 호모그래피 비율 계산 최소 매칭 수
            pose_inlier_min_ratio: 초기 쌍의 최소 포즈 인라이어 비율
            homography_ransac_threshold: 호모그래피 RANSAC 임계값 (픽셀)
            max_reprojection_error: 삼각측량 재투영 에러 임계값 (픽셀)
            focal_length: 기본 내부 파라미터의 초점 거리 (픽셀)
            progress: 진행 상황 콜백 (None이면 출력 없음)
        """
        self.intrinsics = intrinsics
        self.feature_algorithm = feature_algorithm
        self.num_workers = num_workers
        self.min_points_for_homography = min_points_for_homography
        self.pose_inlier_min_ratio = pose_inlier_min_ratio
        self.focal_length = focal_length
        self.progress = progress

        # 모듈 초기화
        self.detector = FeatureDetector(algorithm=feature_algorithm, nfeatures=nfeatures)
        self.matcher = FeatureMatcher(
            descriptor_type=feature_algorithm,
            ratio_threshold=ratio_threshold
        )
        self.pose_estimator = CameraPoseEstimator()
        self.homography_estimator = HomographyEstimator(homography_ransac_threshold)
        self.triangulator = Triangulator(max_reprojection_error)

    def log(self, message: str) -> None:
        if self.progress is not None:
            self.progress(message)

    def extract_features(self, images: Sequence[np.ndarray]) -> List[FeatureSet]:
        """모든 이미지에서 특징점을 검출합니다."""
        self.log(f"\n=== 특징점 검출 ({self.feature_algorithm.upper()}) ===")

        features = []
        for i, image in enumerate(images):
            features.append(self.detector.extract(image))
            self.log(f"  이미지 {i}: {len(features[-1])}개 특징점")
        return features

    def match_features(self, features: Sequence[FeatureSet]) -> MatchMatrix:
        """모든 이미지 쌍에 대해 특징점을 매칭합니다."""
        self.log("\n=== 특징점 매칭 ===")

        match_matrix = MatchMatrix(len(features))
        match_matrix.compute(features, self.matcher,
                             num_workers=self.num_workers, log=self.progress)
        return match_matrix

    def reconstruct(self, features: Sequence[FeatureSet],
                    intrinsics: Intrinsics) -> ReconstructionResult:
        """
        특징점으로부터 복원을 수행합니다.

        Args:
            features: 이미지별 특징점
            intrinsics: 카메라 내부 파라미터

        Returns:
            ReconstructionResult: 복원 결과 (일부 이미지만 복원될 수 있음)

        Raises:
            EmptyInputError: 특징점 집합이 없는 경우
            NoBaselineError: 초기 쌍을 찾지 못한 경우
        """
        if len(features) == 0:
            raise EmptyInputError("처리할 이미지가 없습니다.")

        match_matrix = self.match_features(features)

        state = ReconstructionState(
            features, match_matrix, intrinsics,
            pose_estimator=self.pose_estimator,
            homography_estimator=self.homography_estimator,
            triangulator=self.triangulator,
            min_points_for_homography=self.min_points_for_homography,
            pose_inlier_min_ratio=self.pose_inlier_min_ratio,
            log=self.log
        )
        result = state.run()

        self.log("\n=== 결과 ===")
        self.log(f"  상태: {result.status.value}")
        self.log(f"  포즈 복원 이미지: {result.posed_views}")
        if result.unposed_views:
            self.log(f"  포즈 미복원 이미지: {result.unposed_views}")
        self.log(f"  복원된 3D 점: {len(result.cloud)}개")
        return result

    def run(self, images: Sequence[np.ndarray],
            intrinsics: Optional[Intrinsics] = None) -> ReconstructionResult:
        """
        전체 SfM 파이프라인을 실행합니다.

        Args:
            images: 입력 이미지 리스트
            intrinsics: 카메라 내부 파라미터 (None이면 self.intrinsics 또는
                첫 이미지 크기와 기본 초점 거리로 생성)

        Returns:
            ReconstructionResult: 복원 결과
        """
        self.log("=" * 50)
        self.log("Structure from Motion 파이프라인 시작")
        self.log("=" * 50)

        if len(images) == 0:
            raise EmptyInputError("처리할 이미지가 없습니다.")

        intrinsics = intrinsics or self.intrinsics
        if intrinsics is None:
            h, w = images[0].shape[:2]
            intrinsics = Intrinsics.from_image_size(w, h, self.focal_length)
        self.log(f"카메라 행렬:\n{intrinsics.K}")

        features = self.extract_features(images)
        return self.reconstruct(features, intrinsics)

    def run_async(self, images: Sequence[np.ndarray],
                  intrinsics: Optional[Intrinsics] = None) -> Future:
        """
        파이프라인을 백그라운드 스레드에서 실행하고 Future를 반환합니다.

        호출자는 Future로 결과를 기다리거나 상태를 확인할 수 있습니다.
        실행 중 취소는 지원하지 않습니다.
        """
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sfm")
        future = executor.submit(self.run, images, intrinsics)
        executor.shutdown(wait=False)
        return future


def run_reconstruction(images: Sequence[np.ndarray],
                       intrinsics: Optional[Intrinsics] = None,
                       progress: Optional[ProgressCallback] = print,
                       **kwargs) -> ReconstructionResult:
    """SfMPipeline(**kwargs).run(images, intrinsics) 의 축약형"""
    return SfMPipeline(intrinsics=intrinsics, progress=progress, **kwargs).run(images)


def load_images(image_paths: Sequence[str],
                progress: Optional[ProgressCallback] = print) -> List[np.ndarray]:
    """
    이미지를 로드합니다. 읽을 수 없는 파일은 경고 후 건너뜁니다.

    Args:
        image_paths: 이미지 파일 경로 리스트

    Returns:
        List[np.ndarray]: 로드된 BGR 이미지
    """
    images = []
    for path in image_paths:
        image = cv2.imread(str(path))
        if image is not None and image.size > 0:
            images.append(image)
            if progress is not None:
                progress(f"로드: {path}")
        elif progress is not None:
            progress(f"경고: 이미지 로드 실패 - {path}")
    return images


def load_image_dir(directory: str,
                   progress: Optional[ProgressCallback] = print) -> List[np.ndarray]:
    """디렉터리의 모든 이미지를 파일 이름 순서로 로드합니다."""
    path = Path(directory)
    if not path.is_dir():
        raise FileNotFoundError(f"이미지 디렉터리가 없습니다: {directory}")
    return load_images(sorted(p for p in path.iterdir() if p.is_file()), progress)


def main(argv: Optional[List[str]] = None) -> int:
    argv = sys.argv[1:] if argv is None else argv
    if not argv:
        print("사용법: python -m incremental_sfm.sfm_pipeline <image_dir> [output.ply]")
        return 1

    image_dir = argv[0]
    output_path = argv[1] if len(argv) > 1 else "res.ply"

    try:
        images = load_image_dir(image_dir)
        result = run_reconstruction(images)
    except (SfMError, FileNotFoundError) as e:
        print(f"복원 실패: {e}")
        return 1

    result.export_to_ply(output_path, images)
    print(f"포인트 클라우드 저장됨: {output_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
