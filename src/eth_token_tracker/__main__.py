from eth_token_tracker.cli import main

raise SystemExit(main())
