# Python version check: 3.11-3.13
import sys

if sys.version_info < (3, 11) or sys.version_info >= (3, 14):
    print(
        "Warning: Unsupported Python version {ver}, please use Python 3.11, 3.12, or 3.13. LabForge is tested on these versions.".format(
            ver=".".join(map(str, sys.version_info[:3]))
        )
    )

# Submodules are imported explicitly, e.g.:
# from labforge.service import LabService
# from labforge.config import config
# from labforge.logger import logger
