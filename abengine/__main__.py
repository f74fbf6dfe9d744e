import sys

from abengine.cli import main

sys.exit(main())
