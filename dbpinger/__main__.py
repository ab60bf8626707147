from dbpinger.cli import main

raise SystemExit(main())
