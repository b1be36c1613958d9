import logging
import math

import numpy as np
import torch
import matplotlib.pyplot as plt

from fdkct import (
    FDKReconstruction,
    ProjectionStack,
    ReconstructionConfig,
    VarianceReconstruction,
    VolumeGeometry,
    circular_geometry,
)


def shepp_logan_projections(geometry, det_u, det_v, du, dv, half_size):
    """Exact cone-beam line integrals of the 3D Shepp-Logan phantom."""
    el_params = np.array([
        [0, 0, 0, 0.69, 0.92, 0.81, 0, 0, 0, 1],
        [0, -0.0184, 0, 0.6624, 0.874, 0.78, 0, 0, 0, -0.8],
        [0.22, 0, 0, 0.11, 0.31, 0.22, -np.pi/10.0, 0, 0, -0.2],
        [-0.22, 0, 0, 0.16, 0.41, 0.28, np.pi/10.0, 0, 0, -0.2],
        [0, 0.35, -0.15, 0.21, 0.25, 0.41, 0, 0, 0, 0.1],
        [0, 0.1, 0.25, 0.046, 0.046, 0.05, 0, 0, 0, 0.1],
        [0, -0.1, 0.25, 0.046, 0.046, 0.05, 0, 0, 0, 0.1],
        [-0.08, -0.605, 0, 0.046, 0.023, 0.05, 0, 0, 0, 0.1],
        [0, -0.605, 0, 0.023, 0.023, 0.02, 0, 0, 0, 0.1],
        [0.06, -0.605, 0, 0.023, 0.046, 0.02, 0, 0, 0, 0.1],
    ])

    snapshot = geometry.snapshot()
    src_pos, det_center, det_u_vec, det_v_vec = snapshot.detector_frames()
    u = (np.arange(det_u) - (det_u - 1) / 2) * du
    v = (np.arange(det_v) - (det_v - 1) / 2) * dv

    # Unit ray directions from the source to every pixel, shape (views, v, u, 3)
    pixels = (det_center[:, None, None, :]
              + u[None, None, :, None] * det_u_vec[:, None, None, :]
              + v[None, :, None, None] * det_v_vec[:, None, None, :])
    direction = pixels - src_pos[:, None, None, :]
    direction /= np.linalg.norm(direction, axis=-1, keepdims=True)

    projections = np.zeros(direction.shape[:-1])
    for x0, y0, z0, a, b, c, phi, _, _, val in el_params:
        center = half_size * np.array([x0, y0, z0])
        axes = half_size * np.array([a, b, c])
        cos_phi, sin_phi = math.cos(phi), math.sin(phi)
        # Rotation about z into the ellipsoid frame, then scaling to the unit sphere
        rot = np.array([[cos_phi, sin_phi, 0.0], [-sin_phi, cos_phi, 0.0], [0.0, 0.0, 1.0]])
        p = ((src_pos - center) @ rot.T / axes)[:, None, None, :]
        q = direction @ rot.T / axes

        qq = np.sum(q * q, axis=-1)
        pq = np.sum(p * q, axis=-1)
        pp = np.sum(p * p, axis=-1)
        disc = np.clip(pq * pq - qq * (pp - 1.0), 0.0, None)
        projections += val * 2.0 * np.sqrt(disc) / qq

    return projections.astype(np.float32)


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")

    num_views = 180
    det_u, det_v = 160, 16
    du, dv = 1.0, 1.0
    source_distance = 1200.0
    isocenter_distance = 600.0
    Nx, Ny, Nz = 64, 64, 4

    attenuation = 0.02
    photons = 1.0e4
    n_realizations = 2000

    geometry = circular_geometry(num_views, isocenter_distance, source_distance)
    grid = VolumeGeometry.centered((Nx, Ny, Nz), (1.0, 1.0, 1.0))
    config = ReconstructionConfig(filter_type="hann", cutoff_frequency=1.0)

    line_integrals = attenuation * shepp_logan_projections(geometry, det_u, det_v, du, dv, 35.0)
    mean_counts = photons * np.exp(-line_integrals)

    # --- Analytic variance ---
    # The log transform maps Poisson counts with mean I to line integrals
    # with variance approximately 1 / I.
    variance_stack = ProjectionStack.centered(1.0 / mean_counts, (du, dv))
    analytic = VarianceReconstruction(geometry, grid, config).compute(variance_stack).numpy()

    # --- Monte-Carlo reference ---
    fdk = FDKReconstruction(geometry, grid, config)
    rates = torch.from_numpy(mean_counts)
    generator = torch.Generator().manual_seed(0)
    total = torch.zeros(grid.array_shape, dtype=torch.float64)
    total_sq = torch.zeros(grid.array_shape, dtype=torch.float64)
    for _ in range(n_realizations):
        counts = torch.clamp(torch.poisson(rates, generator=generator), min=1.0)
        noisy = ProjectionStack.centered(-torch.log(counts / photons), (du, dv))
        volume = fdk.compute(noisy).data.double()
        total += volume
        total_sq += volume * volume

    mean = total / n_realizations
    empirical = ((total_sq - n_realizations * mean * mean) / (n_realizations - 1)).numpy()

    ratio = empirical / analytic
    mid_slice = Nz // 2
    print("Variance of the FDK reconstruction, Monte-Carlo vs. analytic:")
    print("Realizations:", n_realizations)
    print("Mean ratio:", ratio.mean())
    print("Ratio range:", ratio.min(), ratio.max())

    plt.figure(figsize=(12, 4))
    plt.subplot(1, 3, 1)
    plt.imshow(analytic[mid_slice], cmap='gray')
    plt.title("Analytic variance")
    plt.axis('off')
    plt.subplot(1, 3, 2)
    plt.imshow(empirical[mid_slice], cmap='gray')
    plt.title("Empirical variance")
    plt.axis('off')
    plt.subplot(1, 3, 3)
    plt.imshow(ratio[mid_slice], cmap='coolwarm', vmin=0.8, vmax=1.2)
    plt.title("Ratio")
    plt.axis('off')
    plt.tight_layout()
    plt.show()


if __name__ == "__main__":
    main()
