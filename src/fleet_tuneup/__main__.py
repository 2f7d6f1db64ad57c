"""!
@brief ``python -m fleet_tuneup`` entry point.
"""
from __future__ import annotations

import sys

from .main import main

sys.exit(main())
