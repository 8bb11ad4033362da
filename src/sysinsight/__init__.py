"""sysinsight - turn machine telemetry into prioritized insights."""
