"""Start SolPulseTradeBot with ``python run.py``."""

import asyncio

from solpulsebot.main import main

if __name__ == "__main__":
    asyncio.run(main())
