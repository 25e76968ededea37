"""Allow ``python -m likable``."""

from likable.orchestrator import main

main()
