# Copyright (c) Syntropy Systems
"""Allow ``python -m birdrun``."""

from birdrun.cli.main import main

main()
