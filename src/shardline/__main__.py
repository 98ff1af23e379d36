"""Allow `python -m shardline` to run the demo client."""

from shardline.main import run

run()
