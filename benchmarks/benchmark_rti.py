#!/usr/bin/env python3
"""
rtimpc Real-Time Iteration Benchmark: tick latency per horizon
length and transcription.
"""

import time

import numpy as np

import rtimpc
from rtimpc import SolverOptions, between
from rtimpc.mpc import OCP, RealTimeDriver, tank_drive

print(f"rtimpc version: {rtimpc.__version__}")
print()


def tank_ocp(n_intervals):
    system = tank_drive()
    x, y, theta, v_left, v_right = system.states
    u_left, u_right = system.controls

    ocp = OCP(0.0, 0.5 * n_intervals, n_intervals)
    ocp.subject_to(system.equation)
    ocp.subject_to(between(-1.0, u_left, 1.0))
    ocp.subject_to(between(-1.0, u_right, 1.0))
    ocp.minimize_lsq(
        [x, y, theta, v_left, v_right, u_left, u_right],
        weight=[10.0, 10.0, 1.0, 0.1, 0.1, 0.1, 0.1],
        reference=[1.0, 0.0, 0.0, 0.0, 0.0, 0.0, 0.0],
    )
    return ocp


def benchmark_ticks(n_intervals, transcription, n_ticks=20):
    """Closed loop on the tank; returns tick times in ms."""
    driver = RealTimeDriver(
        tank_ocp(n_intervals),
        SolverOptions(transcription=transcription, control_period=0.5),
    )
    x = np.array([0.0, 0.0, 0.1, 0.0, 0.0])
    times = []
    for k in range(n_ticks):
        start = time.perf_counter()
        result = driver.tick(0.5 * k, x)
        times.append((time.perf_counter() - start) * 1000)
        x = driver.nlp.integrator.integrate(
            x, result.control, np.zeros(0), 0.5 * k, 0.5, sensitivities=False
        ).x
    return np.array(times)


def benchmark_tick_latency():
    print("=" * 70)
    print("Tank Drive Tick Latency")
    print("=" * 70)
    print(f"{'N':>6} {'transcription':>20} {'mean (ms)':>12} {'max (ms)':>12}")
    print("-" * 70)
    for n_intervals in (10, 20, 40):
        for transcription in ("multiple_shooting", "single_shooting"):
            # First tick includes the cold start
            times = benchmark_ticks(n_intervals, transcription)[1:]
            print(f"{n_intervals:>6} {transcription:>20} {times.mean():>12.2f} {times.max():>12.2f}")


if __name__ == "__main__":
    benchmark_tick_latency()
