import sys

from worker.worker_app import main

if __name__ == "__main__":
    sys.exit(main())
