"""Request dispatch pipeline for scriptserve.

Each module covers one stage a connection goes through: the listener
accepts it, the dispatcher walks the middleware units in order, and the
connection's response sink carries whatever the units produced back out.
"""
