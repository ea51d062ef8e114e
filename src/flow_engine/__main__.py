from flow_engine.cli import main

raise SystemExit(main())
