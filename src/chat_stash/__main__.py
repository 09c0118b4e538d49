"""Allows running chat-stash as a module: python -m chat_stash run"""

from chat_stash.cli import main

if __name__ == "__main__":
    main()
