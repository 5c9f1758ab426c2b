"""
patchpilot — sandbox package

Purpose
- Isolated, resource-constrained execution of repository commands.

Modules
- ``executor``: ``SandboxExecutor.run`` / ``run_direct``.
- ``isolation``: runner images and container flags.
- ``process``: bounded subprocess capture with process-tree cleanup.
- ``network_policy``: registry egress allow-list.
- ``rate_limiter``: sliding-window execution rate limits.

Import ``SandboxExecutor`` from ``patchpilot.sandbox.executor``.
"""
