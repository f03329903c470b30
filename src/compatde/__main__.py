import sys

from compatde.cli import main

sys.exit(main())
