import sys

from dattrain.cli import main

sys.exit(main())
