#!/usr/bin/env python3
"""Test script to verify all imports work correctly"""

print("Testing imports from roast_logger.py...")

try:
    # Test standard imports
    import pandas as pd
    import numpy as np
    import matplotlib.pyplot as plt
    import serial
    from datetime import datetime, timedelta, timezone
    print("✓ Standard imports work")

    # Test roast_logger.py imports
    from roast_logger import (
        # Frame decoder
        decode_frame,
        encode_frame,

        # Telemetry log and records
        TelemetryLog,
        RoastSession,
        session_to_record,
        session_from_record,

        # Rate of rise
        compute_rate_of_rise,

        # Reference overlay and chart
        ReferenceAligner,
        ChartProjector,
        plot_projection,

        # Persistence and transport
        JsonFileStore,
        SimulatedTransport,

        # Session state machine
        RoastSessionStateMachine,
        RoastState,
    )
    print("✓ All roast_logger.py imports work")

    # Test basic functionality
    sample = encode_frame(150.0, 290.0)
    print(f"✓ Decoded sample frame {sample!r}: {decode_frame(sample)}")

    class StepClock:
        def __init__(self):
            self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

        def __call__(self):
            return self.now

    clock = StepClock()
    transport = SimulatedTransport(seed=0)

    import tempfile
    with tempfile.TemporaryDirectory() as tmp:
        machine = RoastSessionStateMachine(transport, JsonFileStore(tmp), clock=clock)
        machine.connect()
        machine.set_coffee("Smoke test")
        machine.start_logging()
        for _ in range(90):
            clock.now += timedelta(seconds=1)
            machine.tick(clock.now)
        machine.charge()
        print(f"✓ Logged {len(machine.session.log)} frames, state: {machine.state.value}")
        print(f"  - Latest readout: {machine.projection.latest()}")

    print("\n✅ All tests passed! The logger should work correctly.")

except Exception as e:
    print(f"❌ Error: {e}")
    import traceback
    traceback.print_exc()
