"""
CRM Auth - Basic Usage Example

Drives the session manager directly, without a web framework.
"""

import asyncio

from crm_auth import (
    CredentialStore,
    CrmAuthConfig,
    CrmAuthError,
    IdentityProviderClient,
    SessionTokenManager,
    is_authorized,
    project,
)


async def main():
    config = CrmAuthConfig.from_env(debug=True)

    async with IdentityProviderClient(config) as client:
        manager = SessionTokenManager(client, CredentialStore(), debug=True)

        try:
            session = await manager.login("user@example.com", "SecurePassword123!")
        except CrmAuthError as e:
            print(f"Login failed: {e.code} ({e.message})")
            return

        print(f"Logged in as {session.display_name}, tenant {session.tenant_id}")

        # Every read checks expiry and refreshes when inside the margin
        session = await manager.read(session)
        view = project(session)
        if view.needs_reauth:
            print("Session expired, sign in again")
        elif is_authorized(session):
            print(f"Token valid until {view.expires}")

        manager.logout(session)


if __name__ == "__main__":
    asyncio.run(main())
