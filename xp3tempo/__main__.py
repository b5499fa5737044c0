import sys

from xp3tempo.cli import main

sys.exit(main())
