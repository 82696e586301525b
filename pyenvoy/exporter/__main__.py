import sys

from pyenvoy.exporter.server import main

sys.exit(main())
