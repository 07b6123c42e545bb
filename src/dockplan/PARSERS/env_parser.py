# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Parser for .env files.
"""
import io
import logging
import re
from typing import Dict

from dotenv import dotenv_values

logger = logging.getLogger(__name__)

_VALID_KEY = re.compile(r'[a-zA-Z_][a-zA-Z0-9_]*')


class EnvParser:
    """
    Reads ``KEY=value`` files as used by compose ``env_file`` and the project ``.env``.
    """
    @staticmethod
    def parse(env_path: str) -> Dict[str, str]:
        """
        Parses an .env file from a path.

        :param env_path: Path to the .env file.
        :return: Dictionary of environment variables.
        """
        with open(env_path, 'r', encoding='utf-8') as f:
            content = f.read()
        return EnvParser.parse_from_string(content)

    @staticmethod
    def parse_from_string(content: str) -> Dict[str, str]:
        """
        Parses environment variables from a string.

        Quotes, comments, ``export`` prefixes and escapes are handled by python-dotenv.
        Values are taken literally: references are resolved later by the compose
        interpolation pass. Keys that are not valid variable names are dropped, and
        keys without a value map to an empty string.
        """
        env = {}
        for key, value in dotenv_values(stream=io.StringIO(content), interpolate=False).items():
            if not _VALID_KEY.fullmatch(key):
                logger.warning("Ignoring invalid variable name %r in env file", key)
                continue
            env[key] = value if value is not None else ""
        return env
