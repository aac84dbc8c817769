import sys

from safe_upgrade.cli.upgradectl import main

sys.exit(main())
