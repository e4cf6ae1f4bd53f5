"""URL routing for the credits API.


The /api/ namespace exposes the ledger, unlock and sign-in operations. Page
rendering lives in a separate frontend and never hits these routes directly.
"""

from django.urls import path, include


urlpatterns = [
	path("api/", include("api.urls")),
]
