import sys

from close_rts.runner import main

raise SystemExit(main(sys.argv[1:]))
