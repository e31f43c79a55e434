#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

import sys

from raven_history.cli import main

sys.exit(main())
