import os

# Keep test runs from writing log files into the working tree.
os.environ.setdefault("SENSES_LOG_TO_FILE", "0")
os.environ.setdefault("SENSES_LOG_LEVEL", "WARNING")
