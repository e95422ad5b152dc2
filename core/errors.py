# Copyright (C) 2026 grodz
#
# This file is part of Carousel.
#
# Carousel is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.

"""Fault types shared by the voice core and its adapters."""


class CarouselError(Exception):
    """Base class for all Carousel faults."""


class TransportFault(CarouselError):
    """Joining the voice channel failed (fetch, permissions, timeout, client error).

    Recovered by returning failure to the caller. Never fatal.
    """


class PlaybackFault(CarouselError):
    """Building or starting the audio stream failed.

    Recovered by the flat retry in PlaybackController. Never fatal.
    """


class ConfigurationFault(CarouselError):
    """Startup pre-flight failed (credentials, channel id, audio file).

    Fatal: bot.py logs every problem and exits with status 1.
    """

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "invalid configuration")
