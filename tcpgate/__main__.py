from tcpgate.cli import main

raise SystemExit(main())
