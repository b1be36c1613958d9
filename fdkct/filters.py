"""Ramp filtering of projection rows and its variance counterpart.

The ramp kernel is built once per run in the frequency domain and applied to
every projection row by zero-padded FFT convolution. The variance kernels are
pure functions of the ramp kernel: for independent input pixels, the variance
of ``y = h * x`` is ``h**2 * var(x)`` and the covariance of two neighbouring
outputs is ``(h[n] h[n+1]) * var(x)``.
"""

import logging
import math

import torch

from .config import FilterType
from .exceptions import ConfigurationError, InvalidParameterError
from .utils import _allocate, _next_power_of_two, log_step

logger = logging.getLogger(__name__)


# ============================================================================
# Kernel Construction
# ============================================================================

def kernel_length(detector_width):
    """Return the padded FFT length used for rows of `detector_width` pixels.

    Raises
    ------
    InvalidParameterError
        If `detector_width` is not a positive integer.
    """
    if isinstance(detector_width, bool) or int(detector_width) != detector_width or detector_width < 1:
        raise InvalidParameterError(f"detector width must be a positive integer, got {detector_width!r}")
    return _next_power_of_two(2 * int(detector_width))


def apodization_window(filter_type, normalized_frequency, cutoff=1.0):
    """Evaluate an apodization window.

    Parameters
    ----------
    filter_type : FilterType or str
        Window to evaluate.
    normalized_frequency : torch.Tensor
        Absolute frequency as a fraction of the Nyquist frequency, in [0, 1].
    cutoff : float, optional
        Fraction of the Nyquist frequency beyond which the window is zero.

    Returns
    -------
    torch.Tensor
        Window values, same shape as `normalized_frequency`.
    """
    filter_type = FilterType.parse(filter_type)
    if not 0.0 <= cutoff <= 1.0:
        raise InvalidParameterError(f"cutoff frequency must lie in [0, 1], got {cutoff!r}")
    nu = normalized_frequency
    if cutoff == 0.0:
        return torch.zeros_like(nu)
    if filter_type is FilterType.RAM_LAK:
        window = torch.ones_like(nu)
    elif filter_type is FilterType.HANN:
        window = 0.5 * (1.0 + torch.cos(math.pi * nu / cutoff))
    elif filter_type is FilterType.HAMMING:
        window = 0.54 + 0.46 * torch.cos(math.pi * nu / cutoff)
    else:
        window = torch.cos(0.5 * math.pi * nu / cutoff)
    return torch.where(nu <= cutoff, window, torch.zeros_like(window))


def ramp_kernel(filter_type, cutoff, detector_width):
    """Build the frequency response of the apodized ramp filter.

    The band-limited ramp is sampled in the spatial domain on the padded
    circular grid (``h[0] = 1/4``, ``h[n] = -1/(pi n)^2`` for odd ``n``),
    transformed to the frequency domain and multiplied by the apodization
    window. The zero-frequency coefficient is set to exactly zero.

    Parameters
    ----------
    filter_type : FilterType or str
        Apodization window.
    cutoff : float
        Window cutoff as a fraction of the Nyquist frequency, in [0, 1].
    detector_width : int
        Number of detector columns.

    Returns
    -------
    torch.Tensor
        Real float64 tensor of length ``kernel_length(detector_width)`` in
        FFT order, in units of 1/pixel.
    """
    n_fft = kernel_length(detector_width)
    index = torch.arange(n_fft, dtype=torch.float64)
    offsets = torch.where(index <= n_fft // 2, index, index - n_fft)

    spatial = torch.zeros(n_fft, dtype=torch.float64)
    spatial[0] = 0.25
    odd = torch.remainder(offsets, 2) == 1
    spatial[odd] = -1.0 / (math.pi * offsets[odd]) ** 2

    response = torch.fft.fft(spatial).real
    normalized_frequency = torch.abs(torch.fft.fftfreq(n_fft, dtype=torch.float64)) / 0.5
    kernel = response * apodization_window(filter_type, normalized_frequency, cutoff)
    kernel[0] = 0.0
    return kernel


def impulse_response(kernel):
    """Return the real circular impulse response of a symmetric kernel."""
    n_fft = kernel.shape[-1]
    return torch.fft.irfft(kernel[: n_fft // 2 + 1].to(torch.complex128), n=n_fft)


def squared_impulse_response(kernel):
    """Return ``h**2`` for the impulse response ``h`` of `kernel`."""
    spatial = impulse_response(kernel)
    return spatial * spatial


def lag_one_product(kernel):
    """Return ``h[n] * h[n + 1]`` (circular) for the impulse response of `kernel`."""
    spatial = impulse_response(kernel)
    return spatial * torch.roll(spatial, -1)


def variance_kernel(kernel):
    """Frequency response propagating pixel variances through `kernel`."""
    return torch.fft.fft(squared_impulse_response(kernel)).real


def covariance_kernel(kernel):
    """Frequency response giving the covariance of neighbouring filtered samples."""
    return torch.fft.fft(lag_one_product(kernel))


def _convolve_rows(rows, kernel, chunk, what):
    """Convolve the last axis of `rows` with a frequency-domain `kernel`."""
    n_fft = kernel.shape[-1]
    width = rows.shape[-1]
    half_spectrum = kernel[: n_fft // 2 + 1]
    out = _allocate(rows.shape, torch.float64, what)
    for first in range(0, rows.shape[0], chunk):
        block = rows[first:first + chunk].to(torch.float64)
        spectrum = torch.fft.rfft(block, n=n_fft, dim=-1)
        spectrum = spectrum * half_spectrum
        out[first:first + chunk] = torch.fft.irfft(spectrum, n=n_fft, dim=-1)[..., :width]
    return out


# ============================================================================
# Filter Stages
# ============================================================================

class RampFilter:
    """Apodized ramp filter applied along detector rows.

    Parameters
    ----------
    config : ReconstructionConfig
        Provides the window, its cutoff and the batch size.
    detector_width : int
        Number of detector columns; fixes the kernel length.

    Attributes
    ----------
    kernel : torch.Tensor
        Frequency response (float64, FFT order, DC coefficient zero).
    kernel_length : int
        Next power of two >= 2 * detector_width.

    Examples
    --------
    >>> ramp = RampFilter(ReconstructionConfig(filter_type="hann"), 256)
    >>> ramp.kernel_length
    512
    >>> float(ramp.kernel[0])
    0.0
    """

    def __init__(self, config, detector_width):
        self.config = config
        self.detector_width = int(detector_width)
        self.kernel = ramp_kernel(config.filter_type, config.cutoff_frequency, detector_width)
        self.kernel_length = int(self.kernel.shape[0])
        logger.debug("ramp kernel: %s window, cutoff %.3f, length %d",
                     config.filter_type.value, config.cutoff_frequency, self.kernel_length)

    @property
    def spatial_kernel(self):
        """Circular impulse response of :attr:`kernel`."""
        return impulse_response(self.kernel)

    def compute(self, rows):
        """Filter every row of a (n, rows, columns) tensor.

        Returns
        -------
        torch.Tensor
            float64 tensor of the input shape.

        Raises
        ------
        ConfigurationError
            If the row width differs from the kernel's detector width.
        """
        self._check_width(rows)
        with log_step("ramp filtering", logger):
            return _convolve_rows(rows, self.kernel, self.config.projection_chunk, "filtered projections")

    def _check_width(self, rows):
        if rows.shape[-1] != self.detector_width:
            raise ConfigurationError(
                f"ramp kernel built for {self.detector_width} columns, got rows of {rows.shape[-1]}"
            )


class VarianceRampFilter:
    """Variance propagation through a :class:`RampFilter`.

    Both kernels are derived from ``ramp_filter.kernel``; nothing is rebuilt
    from the filter parameters.

    Parameters
    ----------
    ramp_filter : RampFilter
        Filter whose noise propagation is computed.

    Attributes
    ----------
    kernel : torch.Tensor
        Frequency response of the squared impulse response.
    covariance_kernel : torch.Tensor
        Complex frequency response of ``h[n] h[n+1]``.
    """

    def __init__(self, ramp_filter):
        self.ramp_filter = ramp_filter
        self.config = ramp_filter.config
        self.detector_width = ramp_filter.detector_width
        self.kernel = variance_kernel(ramp_filter.kernel)
        self.covariance_kernel = covariance_kernel(ramp_filter.kernel)
        self.kernel_length = ramp_filter.kernel_length

    @property
    def spatial_kernel(self):
        """Squared impulse response of the ramp filter."""
        return squared_impulse_response(self.ramp_filter.kernel)

    def compute(self, variances):
        """Propagate per-pixel variances through the ramp filter.

        Parameters
        ----------
        variances : torch.Tensor
            Variances of independent pixels, shape (n, rows, columns).

        Returns
        -------
        variance : torch.Tensor
            Variance of every filtered sample.
        covariance : torch.Tensor
            Covariance between filtered samples ``k`` and ``k + 1`` of the same
            row, stored at column ``k``.
        """
        self.ramp_filter._check_width(variances)
        chunk = self.config.projection_chunk
        with log_step("variance ramp filtering", logger):
            variance = _convolve_rows(variances, self.kernel, chunk, "filtered variances")
            covariance = _convolve_rows(variances, self.covariance_kernel, chunk, "filtered covariances")
        return variance, covariance
