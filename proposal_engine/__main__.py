"""Allow running as: python -m proposal_engine"""

from proposal_engine.main import main

if __name__ == "__main__":
    main()
