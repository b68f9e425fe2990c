#!/usr/bin/env python3
"""
Azure App Service Deployment Orchestrator

- provision:  ensure resource group, registry, MySQL, Redis, plan and web app
- build-push: build the application and nginx images and push them
- release:    point the web app at the image and restart it
- verify:     probe /health until the app answers
- deploy:     all of the above

This script supports running directly from a source checkout. It adds the
local `src/` directory to sys.path so the modules import without installing.
For production use, prefer installing the project and using the
`azure-deploy` console script.
"""

import os
import sys

# Add src/ to path to import modules directly
REPO_ROOT = os.path.dirname(os.path.abspath(__file__))
SRC_PATH = os.path.join(REPO_ROOT, "src")
if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

from cli import main  # noqa: E402

if __name__ == "__main__":
    sys.exit(main())
