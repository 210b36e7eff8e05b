"""User input functions for cldbackup."""
import getpass
import os

from cldbackup.credentials import Credentials
from cldbackup.utils import DEFAULT_PARENT_FOLDER, sanitize


def choices(prompt):
    """
    Prompt the user with a yes/no question.

    Args:
        prompt (str): The message to display to the user.

    Returns:
        bool: True if the user enters 'y' or 'yes', False otherwise
        (including empty input).
    """
    return input(prompt).strip().lower() in ("y", "yes")


def prompt_credentials(cloud_name=None):
    """
    Ask for the Cloudinary cloud name, API key and API secret.

    The secret is read without echo. Blank answers are re-asked.

    Returns:
        Credentials: The entered credentials.
    """
    def ask(label, default=None, secret=False):
        while True:
            suffix = f" (leave blank for '{default}')" if default else ""
            reader = getpass.getpass if secret else input
            value = reader(f"[?] Enter {label}{suffix}: ").strip()
            if value:
                return value
            if default:
                return default
            print(f"[!] Error: {label} cannot be empty!")

    return Credentials(
        cloud_name=ask("Cloudinary cloud name", cloud_name),
        api_key=ask("API key"),
        api_secret=ask("API secret", secret=True),
    )


def get_user_folder(default_name=None):
    """
    Ask user to enter the backup folder. If left blank, use
    ./downloads/<default_name> or fallback to './downloads'.

    Returns:
        str: Path to the folder
    """
    folder = input("[?] Enter backup folder (leave blank for auto): ").strip()
    cwd = os.getcwd()

    if folder:
        return os.path.abspath(os.path.expanduser(folder))
    if default_name:
        return os.path.join(cwd, DEFAULT_PARENT_FOLDER, sanitize(default_name))
    return os.path.join(cwd, DEFAULT_PARENT_FOLDER)
