"""Visual-inertial odometry building blocks: rotations, IMU pre-integration, IMU,
reprojection and marginalization factors, two-view geometry, feature tracking,
structure from motion and visual-inertial initialization."""

__version__ = "0.1.0"