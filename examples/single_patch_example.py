import logging
import numpy as np
import matplotlib.pyplot as plt
from mpireco import (setup_logging, simulate_calibration, simulate_measurement, phantom_disc,
                     reconstruction_with_frequencies)
from mpireco.plotting import plot_slice

def run_single_patch_example():
    print("--- Running Single-Patch MPI Reconstruction Example ---")
    setup_logging(logging.INFO)

    # 1. Simulate a calibration and a dynamic measurement
    shape = (16, 16, 1)
    calibration = simulate_calibration(shape, fov=(0.032, 0.032, 0.001), num_frequencies=40,
                                       num_receivers=2, num_background_frames=4, background_level=0.01)
    phantom_frames = np.stack([phantom_disc(shape, radius=0.25, center=(c, 0.0)) for c in np.linspace(-0.4, 0.4, 6)],
                              axis=1)
    measurement = simulate_measurement(calibration, phantom_frames, num_frames=6, noise_level=0.02,
                                       num_background_frames=10)

    # 2. Reconstruct with an SNR based frequency selection
    params = {
        'minFreq': 80e3,
        'SNRThresh': 5,
        'bgCorrection': True,
        'frames': np.arange(6),
        'bgFrames': np.arange(6, 16),
        'solver': 'kaczmarz',
        'lambda': 1e-3,
        'iterations': 5,
        'maxload': 4,
    }
    image = reconstruction_with_frequencies(calibration, measurement, **params)
    print(f"Reconstructed image: dims={image.dims}, shape={image.shape}")

    # 3. Plotting
    is_interactive = hasattr(plt, 'isinteractive') and plt.isinteractive()
    for frame in (0, 5):
        fn = None if is_interactive else f"single_patch_frame{frame}.png"
        plot_slice(image, axis='z', frame=frame, title=f"Frame {frame}", filename=fn)
        if fn:
            print(f"Plot saved: {fn}")

    print("\n--- Single-Patch Example Finished ---")

if __name__ == "__main__":
    run_single_patch_example()
