#!/usr/bin/env python3
"""
Memory Hog - allocate memory for testing the Memory Monitor
Creates a process that holds `--mem` chunks of 100MB for `--timeout` seconds
"""

import argparse
import logging
import os
import sys
import time

logger = logging.getLogger(__name__)

CHUNK_SIZE = 100_000_000  # 100MB


def allocate_chunk(size=CHUNK_SIZE):
    """Allocate a chunk and touch every page so it is resident"""
    chunk = bytearray(size)
    for i in range(0, size, 4096):
        chunk[i] = 1
    return chunk


def consume(count, size=CHUNK_SIZE):
    """Allocate `count` chunks of `size` bytes"""
    return [allocate_chunk(size) for _ in range(count)]


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Hold memory to exercise the memory monitor")
    parser.add_argument("--mem", type=int, default=3, help="How many times to allocate 100MB")
    parser.add_argument("--timeout", type=float, default=15, help="How long to wait before exiting")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    if args.mem < 0:
        print(f"Invalid --mem {args.mem}. Usage: {sys.argv[0]} [--mem N] [--timeout S]")
        sys.exit(1)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    logger.info(f"Allocating {args.mem} x 100MB of memory (PID: {os.getpid()})")
    chunks = consume(args.mem)

    # Keep the process running and hold the memory
    try:
        time.sleep(args.timeout)
    except KeyboardInterrupt:
        logger.info("Interrupted")
    logger.info(f"Allocated 100MB chunks: {len(chunks)}")


if __name__ == "__main__":
    main()
