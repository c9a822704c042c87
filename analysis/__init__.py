"""Frame analysis: differencing, motion decisions and the monitor loop."""
