"""Allow running as ``python -m flowkeeper``."""

from flowkeeper.cli.main import main

main()
