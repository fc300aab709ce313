import sys

from subsynth.cli import main

sys.exit(main())
