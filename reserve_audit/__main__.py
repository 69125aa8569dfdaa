import sys

from reserve_audit.cli import main

sys.exit(main())
