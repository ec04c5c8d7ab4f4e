"""One-off job entrypoints.

These modules are designed to run from cron or any external scheduler:

  python -m solarwatch.app.jobs.watchdog
"""
