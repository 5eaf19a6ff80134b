from __future__ import annotations

from ansible_gitops.cli import main

raise SystemExit(main())
