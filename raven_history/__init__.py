#
# raven - structured, searchable shell history
#
# Copyright (c) 2021, Mitch Haile.
#
# MIT License
#

__version__ = "0.4.0"
