"""
Common Helper Functions
"""

import logging
import sys


LOG_FORMAT = "%(asctime)s %(message)s"
LOG_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


"""
formatSecondsToHhmmss
Helper to convert seconds to hours minutes and seconds
@param seconds
@return formatted string of hhmmss
"""
def formatSecondsToHhmmss(seconds):
    hours = seconds // (60*60)
    seconds %= (60*60)
    minutes = seconds // 60
    seconds %= 60
    return "%02i:%02i:%02i" % (hours, minutes, seconds)


"""
setupLogging
Log lines go to stderr with a date and time prefix
@param verbose enables debug output
"""
def setupLogging(verbose=False):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )


"""
fatal
Logs the message and exits the process with status 1
"""
def fatal(msg, *args):
    logging.critical(msg, *args)
    sys.exit(1)
