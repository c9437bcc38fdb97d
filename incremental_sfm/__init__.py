"""
Incremental SfM - Structure from Motion Library

순서 없는 사진 집합으로부터 희소 3D 포인트 클라우드와 이미지별
카메라 포즈를 복원하는 증분식 Structure from Motion 엔진입니다.
"""

from .common import (
    EmptyInputError, ImagePair, Intrinsics, NoBaselineError, SfMError, Track,
)
from .feature_detection import FeatureDetector, FeatureSet
from .feature_matching import FeatureMatcher
from .match_matrix import MatchMatrix
from .homography import HomographyEstimator
from .camera_pose import CameraPose, CameraPoseEstimator
from .triangulation import Triangulator
from .export import ColorSource, export_to_ply, save_camera_poses
from .reconstruction import ReconstructionResult, ReconstructionState, ReconstructionStatus
from .sfm_pipeline import SfMPipeline, load_image_dir, run_reconstruction

__version__ = "0.1.0"
__all__ = [
    "EmptyInputError",
    "ImagePair",
    "Intrinsics",
    "NoBaselineError",
    "SfMError",
    "Track",
    "FeatureDetector",
    "FeatureSet",
    "FeatureMatcher",
    "MatchMatrix",
    "HomographyEstimator",
    "CameraPose",
    "CameraPoseEstimator",
    "Triangulator",
    "ColorSource",
    "export_to_ply",
    "save_camera_poses",
    "ReconstructionResult",
    "ReconstructionState",
    "ReconstructionStatus",
    "SfMPipeline",
    "load_image_dir",
    "run_reconstruction",
]
