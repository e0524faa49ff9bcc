"""Filesystem persistence for requirements.

Layout (``layout = "filename"``, the default):
    <root>/
    ├── .req/
    │   ├── config.toml                # allowed kinds, layout, load policy
    │   ├── sequence.yaml              # highest number issued per prefix
    │   └── templates/
    │       ├── auth-SYS.md            # body template for one prefix
    │       └── SYS.md                 # body template for a kind
    ├── USR-001.md
    ├── SYS-001.md
    └── any/subfolder/auth-SYS-002.md

With ``layout = "path"`` the namespace and kind become folders:
    <root>/auth/SYS/002.md
"""
