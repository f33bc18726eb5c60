from videogen.collaborators import LocalArtifactStore
from videogen.db import init_db
from videogen.logging import configure_logging
from videogen.providers.registry import default_registry
from videogen.reconciler import Reconciler


def main() -> None:
    configure_logging()
    init_db()
    reconciler = Reconciler(default_registry(), LocalArtifactStore())
    try:
        reconciler.run_forever()
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
