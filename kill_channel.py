"""
Kill Channel - unbuffered hand-off of kill notifications
Purpose: Pass each list of killed pids from the monitor thread to one consumer
"""

import threading


class ChannelClosed(Exception):
    """Raised when sending to or receiving from a closed channel"""


class KillChannel:
    """Rendezvous channel: send() returns only once a receiver took the item.

    Holds at most one item. With a single producer this keeps at most one
    notification in flight, so a slow consumer stalls the producer.
    """

    def __init__(self):
        self._cond = threading.Condition()
        self._item = None
        self._full = False
        self._taken = False
        self._closed = False

    @property
    def closed(self):
        return self._closed

    @property
    def pending(self):
        """True while a sent item waits for a receiver"""
        return self._full

    def send(self, item):
        with self._cond:
            self._cond.wait_for(lambda: not self._full or self._closed)
            if self._closed:
                raise ChannelClosed("send on closed channel")
            self._item = item
            self._full = True
            self._taken = False
            self._cond.notify_all()
            self._cond.wait_for(lambda: self._taken or self._closed)
            if not self._taken:
                self._item = None
                self._full = False
                raise ChannelClosed("channel closed before the item was received")

    def receive(self, timeout=None):
        """Wait for the next item, raising TimeoutError if `timeout` seconds pass"""
        with self._cond:
            if not self._cond.wait_for(lambda: self._full or self._closed, timeout):
                raise TimeoutError("no item received")
            if not self._full:
                raise ChannelClosed("receive on closed channel")
            item = self._item
            self._item = None
            self._full = False
            self._taken = True
            self._cond.notify_all()
            return item

    def close(self):
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def __iter__(self):
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return
