"""
Shipwright - build, publish and roll out one service image to one host.

Packages:
- shipwright.core: Errors, logging, secrets, settings
- shipwright.execution: Retry policy and target locks
- shipwright.deploy: Builder, Publisher, Remote Executor, Sequencer
- shipwright.startup: Container entrypoint (migrations, seeds, exec)
- shipwright.cli / shipwright.api: Terminal and webhook surfaces
"""

__version__ = "0.3.0"
