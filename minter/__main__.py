import sys

from minter.cli import main

sys.exit(main())
