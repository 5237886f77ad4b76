from atr_reversal.cli import main

raise SystemExit(main())
