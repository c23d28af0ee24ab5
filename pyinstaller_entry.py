"""PyInstaller entry point for the poetalk backend."""
import sys

if getattr(sys, "frozen", False):
    sys.path.insert(0, sys._MEIPASS)

from poetalk.run import main

main()
