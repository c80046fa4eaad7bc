#!/usr/bin/env python3
"""
nbody_lbvh.run

Headless frame loop around ``Simulation.advance`` with frame-rate logging.

Each frame runs ``config.substeps`` substeps. With a target frame rate the
loop sleeps so frames start no closer than 0.9 frame durations apart;
without one it runs flat out. Frames per second and the mean frame time are
logged once per wall-clock second.
"""
from __future__ import annotations

import time as pytime
from typing import Callable

from .simulation import Simulation
from .utils._logging import get_logger


def run_frames(
    sim: Simulation,
    n_frames: int,
    target_fps: float | None = None,
    on_frame: Callable[[int, object], None] | None = None,
    verbose: bool = True,
) -> dict:
    """
    Advance *sim* for *n_frames* frames.

    Parameters
    ----------
    sim : Simulation
        A seeded simulation.
    n_frames : int
        Number of frames to run.
    target_fps : float or None
        Pace frames to this rate; None runs as fast as possible.
    on_frame : callable or None
        ``on_frame(frame_index, positions)`` after every frame, e.g. to render.
    verbose : bool
        Log FPS once per second.

    Returns
    -------
    stats : dict
        'frames', 'substeps', 'wall_time' (s) and 'mean_fps'.
    """
    if n_frames < 0:
        raise ValueError(f"n_frames must be non-negative, got {n_frames}")
    if target_fps is not None and not target_fps > 0:
        raise ValueError(f"target_fps must be positive, got {target_fps}")
    logger = get_logger(__name__, verbose)

    min_interval = 0.9 / target_fps if target_fps is not None else 0.0
    t_start = pytime.perf_counter()
    last_frame = t_start - min_interval
    last_log = t_start
    frame_count = 0
    substeps_before = sim.substeps_done

    for frame in range(n_frames):
        if min_interval:
            wait = min_interval - (pytime.perf_counter() - last_frame)
            if wait > 0:
                pytime.sleep(wait)
        last_frame = pytime.perf_counter()

        positions = sim.advance()
        if on_frame is not None:
            on_frame(frame, positions)

        frame_count += 1
        now = pytime.perf_counter()
        if now - last_log >= 1.0:
            elapsed = now - last_log
            logger.info("FPS: %.1f, Avg frame time: %.2f ms",
                        frame_count / elapsed, 1000.0 * elapsed / frame_count)
            frame_count = 0
            last_log = now

    if sim.backend == 'gpu':
        from .gpu import synchronize
        synchronize()
    wall_time = pytime.perf_counter() - t_start

    return {
        'frames': n_frames,
        'substeps': sim.substeps_done - substeps_before,
        'wall_time': wall_time,
        'mean_fps': n_frames / wall_time if wall_time > 0 else float('inf'),
    }


def main(argv=None) -> dict:
    import argparse
    from .config import default_config
    from .scenarios import SCENARIOS

    parser = argparse.ArgumentParser(description='2-D Barnes-Hut LBVH N-body demo')
    parser.add_argument('-N', '--num-bodies', type=int, default=50_000,
                        help='Number of bodies (default: 50000)')
    parser.add_argument('--frames', type=int, default=600,
                        help='Frames to run (default: 600)')
    parser.add_argument('--substeps', type=int, default=1,
                        help='Substeps per frame (default: 1)')
    parser.add_argument('--theta', type=float, default=0.6,
                        help='Opening angle (default: 0.6)')
    parser.add_argument('--scenario', choices=sorted(SCENARIOS), default='default')
    parser.add_argument('--backend', choices=['auto', 'gpu', 'cpu'], default='auto')
    parser.add_argument('--precision', choices=['float32', 'float64'], default='float32')
    parser.add_argument('--fps', type=float, default=None,
                        help='Target frame rate (default: unpaced)')
    parser.add_argument('--seed', type=int, default=None)
    args = parser.parse_args(argv)

    config = default_config(substeps=args.substeps, theta=args.theta, precision=args.precision)
    with Simulation(config, backend=args.backend, verbose=True) as sim:
        sim.set_scenario(args.scenario, args.num_bodies, seed=args.seed)
        stats = run_frames(sim, args.frames, target_fps=args.fps)
        sim.logger.info("%d frames in %.2f s (%.1f FPS)",
                        stats['frames'], stats['wall_time'], stats['mean_fps'])
    return stats


if __name__ == "__main__":
    main()
