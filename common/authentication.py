from rest_framework_simplejwt.authentication import JWTAuthentication


class QueryStringJWTAuthentication(JWTAuthentication):
    """JWT authentication that also reads ``?access_token=``.

    Browser ``EventSource`` clients cannot set an ``Authorization`` header, so
    the change stream accepts the access token in the query string instead.
    """

    query_param = "access_token"

    def authenticate(self, request):
        if self.get_header(request) is not None:
            return super().authenticate(request)

        raw_token = request.query_params.get(self.query_param)
        if not raw_token:
            return None

        validated_token = self.get_validated_token(raw_token.encode())
        return self.get_user(validated_token), validated_token
