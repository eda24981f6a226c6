"""SharePoint source access: Graph client, item models, document references."""
