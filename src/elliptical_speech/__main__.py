"""
Entry point for running the analyses as a module.

Usage:
    python -m elliptical_speech {survey,lmem,glm} [arguments]
"""

from elliptical_speech.pipeline import main

if __name__ == "__main__":
    main()
