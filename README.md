# lvio

Building blocks for a sliding-window visual-inertial odometry estimator,
written with NumPy and SciPy.

## Conventions

- Quaternions are NumPy arrays ordered `(w, x, y, z)`.
- Pose parameter blocks are 7-value arrays `[px, py, pz, qx, qy, qz, qw]`.
  Their tangent space has 6 dimensions.
- Speed-and-bias blocks are 9-value arrays
  `[vx, vy, vz, bax, bay, baz, bgx, bgy, bgz]`.
- Cost functions (`ImuFactor`, `ProjectionFactor`, `ProjectionTdFactor`,
  `MarginalizationFactor`) expose `num_residuals`, `parameter_block_sizes` and
  `evaluate(parameters, compute_jacobians=True)`. That method returns
  `(residuals, jacobians)`, where `jacobians` is `None` when not requested.

## What is inside

- `lvio.rotation`: quaternion and rotation helpers, including `quat_multiply`,
  `quat_inverse`, `quat_normalize`, `quat_to_matrix`, `matrix_to_quat`,
  `quat_rotate`, `delta_q`, `skew_symmetric`, `quat_left`, `quat_right` and
  `positify`. It also holds `PoseLocalParameterization`, with `plus(x, delta)`
  and `compute_jacobian(x)`.
- `lvio.integration`: `IntegrationBase` does mid-point IMU pre-integration and
  propagates the bias Jacobian and covariance. Its methods are `push_back`,
  `propagate`, `repropagate` and `evaluate`. It is configured with `ImuNoise`,
  which holds the noise densities `acc_n`, `gyr_n`, `acc_w` and `gyr_w`, and
  with a gravity vector.
- `lvio.imu_factor`: `ImuFactor` gives the 15-dimensional residual between two
  pose and speed-bias blocks, with analytic Jacobians.
- `lvio.projection`: `ProjectionFactor` and `ProjectionTdFactor` are
  inverse-depth reprojection residuals. The second one also models the
  camera/IMU time offset and rolling-shutter row delay.
- `lvio.epipolar`: `decompose_essential_mat`, `triangulate_points`, a RANSAC
  fit in `find_fundamental_mat`, and `recover_pose`, which recovers pose by a
  cheirality check. `MotionEstimator.solve_relative_rt` gives the relative pose
  between two frames, or `None` when it fails.
- `lvio.marginalization`: `CauchyLoss`, `ResidualBlockInfo`,
  `MarginalizationInfo` (Schur-complement marginalization into a linear prior)
  and `MarginalizationFactor` (that prior as a cost function). Parameter blocks
  are identified by object identity.
- `lvio.feature_manager`: `FeaturePerFrame`, `FeaturePerId` and
  `FeatureManager`. The manager tracks features across the window, checks
  parallax and handles depth vectors. It also triangulates features and
  removes the oldest or second-newest frame.
- `lvio.initial_sfm`: `GlobalSfm.construct` runs vision-only structure from
  motion over the window. It returns an `SfmResult` or raises `SfmError`. It
  relies on `triangulate_point`, `solve_pnp` and SciPy's least squares.
- `lvio.initial_ex_rotation`: `InitialExRotation.calibrate` calibrates the
  camera-to-IMU rotation online.
- `lvio.initial_alignment`: `ImageFrame`, `Odometry`, `OdometryRegister`
  (lidar odometry converted into the 18-value initialisation record), and the
  visual-IMU alignment. The alignment consists of `solve_gyroscope_bias`,
  `tangent_basis`, `linear_alignment`, `refine_gravity` and
  `visual_imu_alignment`.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## A short example

```python
import numpy as np
from lvio.integration import IntegrationBase, ImuNoise

zero = np.zeros(3)
acc = np.array([0.0, 0.0, 9.81])
noise = ImuNoise(acc_n=0.08, gyr_n=0.004, acc_w=0.00004, gyr_w=2.0e-6)
pre = IntegrationBase(acc, zero, zero, zero, noise, np.array([0.0, 0.0, 9.81]))
for _ in range(100):
    pre.push_back(0.005, acc, zero)

print(pre.sum_dt, pre.delta_v)
```

## What it does not do

The package provides factors, pre-integration, feature bookkeeping and
initialisation steps only. It does not include:

- an estimator that runs the sliding window end to end;
- a nonlinear solver for the sliding-window problem;
- any message transport, sensor input or visualisation;
- a command-line program.

Those parts are left to the caller.