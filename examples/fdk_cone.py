import logging
import math

import matplotlib.pyplot as plt

from fdkct import (
    FDKReconstruction,
    ProjectionGeometry,
    ProjectionStack,
    ReconstructionConfig,
    VolumeGeometry,
    circular_geometry,
)
from fdk_variance import shepp_logan_projections


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    Nx, Ny, Nz = 128, 128, 32
    det_u, det_v = 256, 64
    du, dv = 1.0, 1.0
    source_distance = 900.0
    isocenter_distance = 600.0
    num_views = 360

    grid = VolumeGeometry.centered((Nx, Ny, Nz), (0.5, 0.5, 0.5))

    # --- Full scan ---
    full = circular_geometry(num_views, isocenter_distance, source_distance)
    full_stack = ProjectionStack.centered(
        shepp_logan_projections(full, det_u, det_v, du, dv, 30.0), (du, dv))
    reconstruction = FDKReconstruction(full, grid, ReconstructionConfig(filter_type="hann"))
    full_volume = reconstruction.compute(full_stack).numpy()

    # --- Short scan: pi plus the fan angle plus a small margin ---
    fan = 2.0 * math.atan(0.5 * det_u * du / source_distance)
    arc = math.pi + fan + math.radians(5.0)
    short = ProjectionGeometry()
    n_short = int(num_views * arc / (2.0 * math.pi))
    for i in range(n_short):
        short.add_projection(i * arc / (n_short - 1), isocenter_distance, source_distance)
    short_stack = ProjectionStack.centered(
        shepp_logan_projections(short, det_u, det_v, du, dv, 30.0), (du, dv))
    config = ReconstructionConfig(filter_type="hann", short_scan=True)
    short_volume = FDKReconstruction(short, grid, config).compute(short_stack).numpy()

    print("Cone Beam FDK Example:")
    print("Reconstruction shape:", full_volume.shape)
    print("Full scan data range:", full_volume.min(), full_volume.max())
    print("Short scan data range:", short_volume.min(), short_volume.max())

    mid_slice = Nz // 2
    plt.figure(figsize=(12, 4))
    plt.subplot(1, 3, 1)
    plt.imshow(full_stack.data[0].numpy(), cmap='gray')
    plt.title("Projection 0")
    plt.axis('off')
    plt.subplot(1, 3, 2)
    plt.imshow(full_volume[mid_slice], cmap='gray', vmin=0.0, vmax=0.4)
    plt.title("Full scan mid-slice")
    plt.axis('off')
    plt.subplot(1, 3, 3)
    plt.imshow(short_volume[mid_slice], cmap='gray', vmin=0.0, vmax=0.4)
    plt.title("Short scan mid-slice")
    plt.axis('off')
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
